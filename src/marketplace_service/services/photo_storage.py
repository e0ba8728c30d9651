"""File storage for proof-of-completion photos."""

from __future__ import annotations

import re
from datetime import UTC, datetime
from pathlib import Path

from marketplace_service.core.exceptions import ServiceError

_ALLOWED_EXTENSIONS: frozenset[str] = frozenset({".jpg", ".jpeg", ".png", ".webp", ".heic"})
_SAFE_SEGMENT_RE = re.compile(r"^[A-Za-z0-9._-]+$")


class PhotoStorage:
    """Stores photos under ``<photo_path>/<task_id>/`` and hands out public URLs."""

    def __init__(self, photo_path: str, public_base_url: str, max_photo_size: int) -> None:
        self._photo_path = Path(photo_path)
        self._public_base_url = public_base_url.rstrip("/")
        self._max_photo_size = max_photo_size

        # Ensure photo storage directory exists
        self._photo_path.mkdir(parents=True, exist_ok=True)

    def _check_segment(self, value: str, field: str) -> None:
        if not _SAFE_SEGMENT_RE.match(value) or value in {".", ".."}:
            raise ServiceError("INVALID_INPUT", f"Invalid {field}", 400, {"field": field})

    def save(self, task_id: str, filename: str, content: bytes) -> str:
        """Write a photo and return the URL it is served from."""
        self._check_segment(task_id, "task_id")
        if not content:
            raise ServiceError("INVALID_INPUT", "Photo is empty", 400, {"field": "file"})
        if len(content) > self._max_photo_size:
            raise ServiceError(
                "PHOTO_TOO_LARGE",
                f"Photo exceeds maximum size of {self._max_photo_size} bytes",
                413,
                {},
            )
        extension = Path(filename).suffix.lower() or ".jpg"
        if extension not in _ALLOWED_EXTENSIONS:
            raise ServiceError(
                "INVALID_INPUT",
                f"Photo type must be one of {sorted(_ALLOWED_EXTENSIONS)}",
                400,
                {"field": "file"},
            )

        stored_name = f"{datetime.now(UTC).strftime('%Y%m%dT%H%M%S%f')}{extension}"
        task_dir = self._photo_path / task_id
        task_dir.mkdir(parents=True, exist_ok=True)
        (task_dir / stored_name).write_bytes(content)
        return f"{self._public_base_url}/photos/{task_id}/{stored_name}"

    def delete(self, task_id: str, filename: str) -> None:
        """Remove a stored photo. Missing files are ignored."""
        self._check_segment(task_id, "task_id")
        self._check_segment(filename, "filename")
        (self._photo_path / task_id / filename).unlink(missing_ok=True)

    def resolve(self, task_id: str, filename: str) -> Path:
        """Path of a stored photo, raising PHOTO_NOT_FOUND if it does not exist."""
        self._check_segment(task_id, "task_id")
        self._check_segment(filename, "filename")
        path = self._photo_path / task_id / filename
        if not path.is_file():
            raise ServiceError("PHOTO_NOT_FOUND", "Photo not found", 404, {})
        return path
