"""File storage for review attachments, kept under the data directory."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from pathlib import Path

from reviewdesk.config import settings
from reviewdesk.errors import StorageFailure


def _safe_file_name(filename: str) -> str:
    return filename.replace("/", "_").replace("\\", "_").strip() or "review"


@dataclass(frozen=True)
class LocalFileStorage:
    """upload / get_url / delete over a directory on disk."""

    root: Path
    url_prefix: str = "/files"

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if not target.is_relative_to(self.root.resolve()):
            raise StorageFailure(f"Path escapes storage root: {path}")
        return target

    def upload(self, path: str, content: bytes) -> str:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as exc:
            raise StorageFailure(f"Failed to store {path}: {exc}") from exc
        return path

    def get_url(self, path: str) -> str:
        self._resolve(path)
        return f"{self.url_prefix}/{path}"

    def delete(self, path: str) -> None:
        target = self._resolve(path)
        try:
            target.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageFailure(f"Failed to delete {path}: {exc}") from exc


def review_file_path(manuscript_id: str, reviewer_id: str, version: int, filename: str) -> str:
    return f"reviews/{manuscript_id}/v{version}/{reviewer_id}/{uuid.uuid4().hex[:8]}_{_safe_file_name(filename)}"


def default_storage() -> LocalFileStorage:
    return LocalFileStorage(root=settings.files_path)
