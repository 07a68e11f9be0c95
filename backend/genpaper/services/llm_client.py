from openai import AsyncOpenAI

from genpaper.core.config import get_settings


def resolve_openai_settings() -> dict[str, str]:
    """Resolve OpenAI connection settings, normalizing the base URL to end in /v1."""
    settings = get_settings()
    base_url = (settings.openai_base_url or "https://api.openai.com/v1").rstrip("/")
    if not base_url.endswith("/v1") and "/v1/" not in base_url:
        base_url = f"{base_url}/v1"
    return {
        "base_url": base_url,
        "api_key": settings.openai_api_key or "",
        "model": settings.openai_model,
    }


def build_openai_client() -> AsyncOpenAI:
    settings = get_settings()
    resolved = resolve_openai_settings()
    return AsyncOpenAI(
        api_key=resolved["api_key"],
        base_url=resolved["base_url"],
        timeout=settings.openai_timeout_seconds,
        max_retries=0,
    )
