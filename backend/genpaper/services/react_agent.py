import json
import asyncio
import logging
from typing import Any, Sequence

from openai import AsyncOpenAI, APIConnectionError, RateLimitError, APIStatusError

from genpaper.core.config import get_settings
from genpaper.services.tools import BaseTool

settings = get_settings()
logger = logging.getLogger(__name__)

INITIAL_RETRY_DELAY = 1.0

_TOOLING_ERROR_HINTS = (
    "tools",
    "tool_choice",
    "tool_calls",
    "function calling",
    "function_call",
    "unknown parameter",
    "unsupported",
)


def _join_content_parts(content: Any) -> str:
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict):
                text = part.get("text") or part.get("content")
                if text is not None:
                    parts.append(str(text))
            else:
                text = getattr(part, "text", None)
                if text is not None:
                    parts.append(str(text))
        content = "".join(parts)
    return content.strip() if isinstance(content, str) else ""


def extract_message_content(completion: Any) -> str:
    try:
        message = completion.choices[0].message
    except (AttributeError, IndexError):
        return ""
    return _join_content_parts(getattr(message, "content", None))


class ReActAgent:
    """Tool-calling agent loop over the OpenAI chat completions API.

    Tool calls are executed in order before the model continues, so a tool
    with side effects (recording a citation) completes before the next turn.
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        tools: Sequence[BaseTool],
        model: str | None = None,
        max_steps: int | None = None,
        temperature: float | None = None,
        tool_output_limit: int = 2000,
        max_tool_messages: int = 12,
        max_retries: int | None = None,
    ):
        self.client = client
        self.model = model or settings.openai_model
        self.max_steps = max_steps or settings.section_max_tool_rounds
        self.temperature = settings.generation_temperature if temperature is None else temperature
        self.tool_output_limit = tool_output_limit
        self.max_tool_messages = max_tool_messages
        self.max_retries = max_retries or settings.openai_max_retries
        self.tools = {t.name: t for t in tools}
        self.tool_specs = [t.openai_spec() for t in tools]
        self._force_disable_tools = False
        self.last_error: Exception | None = None

    def _should_use_tools(self) -> bool:
        return bool(self.tool_specs) and not self._force_disable_tools

    def _is_tooling_incompatibility_error(self, e: Exception) -> bool:
        text = str(e).lower()
        if any(h in text for h in _TOOLING_ERROR_HINTS):
            return True
        return isinstance(e, APIStatusError) and getattr(e, "status_code", None) in (400, 404, 422)

    async def _create_completion(
        self,
        messages: list[dict[str, Any]],
        max_tokens: int | None,
        use_tools: bool,
    ) -> Any:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
        }
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        if use_tools and self.tool_specs:
            kwargs["tools"] = self.tool_specs
            kwargs["tool_choice"] = "auto"
        return await self.client.chat.completions.create(**kwargs)

    async def _call_llm_with_retry(
        self, messages: list[dict[str, Any]], max_tokens: int | None, step: int
    ) -> Any | None:
        """Call the LLM with exponential backoff on connection errors and rate limits."""
        delay = INITIAL_RETRY_DELAY
        use_tools = self._should_use_tools()

        for attempt in range(self.max_retries):
            try:
                try:
                    return await self._create_completion(messages, max_tokens, use_tools=use_tools)
                except Exception as e:
                    if use_tools and self._is_tooling_incompatibility_error(e):
                        self._force_disable_tools = True
                        use_tools = False
                        logger.warning("ReActAgent disabling tools for this provider: %s", str(e)[:200])
                        return await self._create_completion(messages, max_tokens, use_tools=False)
                    raise
            except (APIConnectionError, RateLimitError) as e:
                self.last_error = e
                if attempt >= self.max_retries - 1:
                    logger.error("ReActAgent LLM call failed after %d attempts: %s", self.max_retries, e)
                    return None
                logger.warning(
                    "ReActAgent LLM call failed (attempt %d/%d): %s. Retrying in %.1fs...",
                    attempt + 1, self.max_retries, type(e).__name__, delay,
                )
            except APIStatusError as e:
                self.last_error = e
                if e.status_code != 429 or attempt >= self.max_retries - 1:
                    logger.warning("ReActAgent LLM call failed at step %d: %s", step, e, exc_info=True)
                    return None
                logger.warning(
                    "ReActAgent rate limited (attempt %d/%d). Retrying in %.1fs...",
                    attempt + 1, self.max_retries, delay,
                )
            except Exception as e:
                self.last_error = e
                logger.warning("ReActAgent LLM call failed at step %d: %s", step, e, exc_info=True)
                return None
            await asyncio.sleep(delay)
            delay *= 2

        return None

    async def run(self, system_prompt: str, user_prompt: str, max_tokens: int | None = None) -> str:
        """Run the loop until the model answers without tool calls.

        Returns an empty string when the model never produced content;
        ``last_error`` then holds the provider error, if any.
        """
        self.last_error = None
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]

        if not self._should_use_tools():
            completion = await self._call_llm_with_retry(messages, max_tokens, step=0)
            return extract_message_content(completion) if completion is not None else ""

        for step in range(self.max_steps):
            messages = self._trim_tool_messages(messages)

            completion = await self._call_llm_with_retry(messages, max_tokens, step)
            if completion is None:
                return ""

            msg = completion.choices[0].message
            tool_calls = getattr(msg, "tool_calls", None)

            if tool_calls:
                logger.debug(
                    "ReActAgent step %d: %d tool calls %s",
                    step + 1, len(tool_calls), [tc.function.name for tc in tool_calls],
                )
                messages.append(self._message_to_dict(msg))
                messages.extend(await self._execute_tool_calls(tool_calls))
                continue

            content = extract_message_content(completion)
            if content:
                logger.debug("ReActAgent completed at step %d with %d chars", step + 1, len(content))
                return content

            logger.warning("ReActAgent step %d: empty response", step + 1)
            break

        # Tool budget exhausted or empty answer: ask once more without tools
        self._force_disable_tools = True
        messages.append({
            "role": "user",
            "content": "Write the final text now using the citations already recorded.",
        })
        completion = await self._call_llm_with_retry(self._trim_tool_messages(messages), max_tokens, step=self.max_steps)
        if completion is not None:
            content = extract_message_content(completion)
            if content:
                return content

        for m in reversed(messages):
            if m.get("role") == "assistant" and m.get("content"):
                return str(m["content"]).strip()
        return ""

    def _trim_tool_messages(self, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Keep only the most recent tool messages to prevent context overflow."""
        tool_indices = [i for i, m in enumerate(messages) if m.get("role") == "tool"]
        if len(tool_indices) <= self.max_tool_messages:
            return messages

        keep_from = tool_indices[-self.max_tool_messages]
        # Drop orphaned assistant tool_call turns along with their tool replies
        head = [
            m for m in messages[:keep_from]
            if m.get("role") != "tool" and not (m.get("role") == "assistant" and m.get("tool_calls"))
        ]
        recent = messages[keep_from:]
        while recent and recent[0].get("role") == "tool":
            recent = recent[1:]
        return head + recent

    def _message_to_dict(self, msg: Any) -> dict[str, Any]:
        tool_calls = getattr(msg, "tool_calls", None) or []
        assistant_msg: dict[str, Any] = {"role": "assistant", "content": msg.content or ""}
        if tool_calls:
            assistant_msg["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.function.name, "arguments": tc.function.arguments},
                }
                for tc in tool_calls
            ]
        return assistant_msg

    async def _execute_tool_calls(self, tool_calls: Sequence[Any]) -> list[dict[str, Any]]:
        tool_messages: list[dict[str, Any]] = []
        for tc in tool_calls:
            content = await self._run_single_tool(tc)
            if len(content) > self.tool_output_limit:
                content = content[: self.tool_output_limit] + "\n...[truncated]"
            tool_messages.append({
                "role": "tool",
                "tool_call_id": getattr(tc, "id", ""),
                "content": content,
            })
        return tool_messages

    async def _run_single_tool(self, tool_call: Any) -> str:
        try:
            name = tool_call.function.name
            args_text = tool_call.function.arguments or "{}"
        except AttributeError:
            return "Invalid tool call format."

        try:
            args = json.loads(args_text)
        except json.JSONDecodeError:
            return f"Tool arguments must be a JSON object, got: {args_text[:200]}"

        tool = self.tools.get(name)
        if not tool:
            return f"Unknown tool: {name}"

        try:
            return await tool.execute(args)
        except Exception as e:
            logger.warning("Tool %s execution failed", name, exc_info=True)
            return f"Tool execution error: {e}"
