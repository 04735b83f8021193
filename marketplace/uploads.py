"""
Temporary storage for uploaded images.
"""

import logging
import os
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import BadRequestError

logger = logging.getLogger(__name__)


@dataclass
class ImageUpload:
    """An uploaded file as received from the HTTP layer."""
    filename: Optional[str]
    content_type: Optional[str]
    data: bytes


@dataclass
class StoredUpload:
    path: Path
    filename: str

    @property
    def url(self) -> str:
        """Relative URL the file is served under."""
        return f"/uploads/{self.filename}"


class UploadStorage:
    """
    Writes validated image uploads to the upload directory under unique names.
    """

    def __init__(self, upload_dir: str = "uploads", max_upload_size: int = 5 * 1024 * 1024):
        self.upload_dir = Path(upload_dir)
        self.max_upload_size = max_upload_size
        self.upload_dir.mkdir(parents=True, exist_ok=True)

    def validate(self, upload: ImageUpload) -> None:
        """Validate uploaded image file."""
        if not upload.content_type or not upload.content_type.startswith('image/'):
            raise BadRequestError("Only image files are allowed")

        if len(upload.data) > self.max_upload_size:
            raise BadRequestError("File too large")

    def _unique_name(self, original: Optional[str]) -> str:
        suffix = Path(original).suffix.lower() if original else ""
        return f"{int(time.time() * 1000)}-{secrets.randbelow(10**9)}{suffix}"

    def save(self, upload: ImageUpload) -> StoredUpload:
        """Validate and write an upload to disk."""
        self.validate(upload)

        filename = self._unique_name(upload.filename)
        path = self.upload_dir / filename
        try:
            path.write_bytes(upload.data)
        except OSError:
            logger.error(f"Failed to write upload {path}, removing partial file")
            path.unlink(missing_ok=True)
            raise
        return StoredUpload(path=path, filename=filename)

    def delete(self, stored: Optional[StoredUpload]) -> None:
        """Remove a stored upload; a file that is already gone is ignored."""
        if stored is None:
            return
        try:
            os.remove(stored.path)
        except FileNotFoundError:
            logger.warning(f"Upload {stored.path} was already removed")
