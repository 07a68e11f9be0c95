import uuid
import aiofiles
import aiofiles.os
from pathlib import Path
from genpaper.core.config import get_settings

settings = get_settings()


class PdfStorage:
    """Local cache of downloaded source PDFs, keyed by paper id."""

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root or settings.upload_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def key_for(paper_id: uuid.UUID) -> str:
        return f"pdfs/{paper_id}.pdf"

    def _get_file_path(self, key: str) -> Path:
        """Get file path with path traversal protection."""
        if not key or ".." in key or key.startswith("/") or key.startswith("\\"):
            raise ValueError(f"Invalid storage key: {key}")

        file_path = (self.root / key).resolve()

        if not str(file_path).startswith(str(self.root.resolve())):
            raise ValueError(f"Path traversal attempt detected: {key}")

        return file_path

    async def save_pdf(self, paper_id: uuid.UUID, content: bytes) -> str:
        key = self.key_for(paper_id)
        file_path = self._get_file_path(key)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiofiles.open(file_path, "wb") as f:
            await f.write(content)

        return key

    async def load_pdf(self, paper_id: uuid.UUID) -> bytes | None:
        file_path = self._get_file_path(self.key_for(paper_id))
        if not await aiofiles.os.path.exists(file_path):
            return None
        async with aiofiles.open(file_path, "rb") as f:
            return await f.read()

    async def delete_pdf(self, paper_id: uuid.UUID) -> None:
        file_path = self._get_file_path(self.key_for(paper_id))
        if await aiofiles.os.path.exists(file_path):
            await aiofiles.os.remove(file_path)
