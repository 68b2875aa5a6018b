"""Business card image storage on the local filesystem."""

import logging
import uuid
from pathlib import Path
from typing import Optional

from .config import config
from .errors import StorageError, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
}

URL_SCHEME = "cards://"


class CardImageStorage:
    """Stores uploaded card images and hands back a retrievable reference."""

    def __init__(self, root: Optional[Path] = None, max_bytes: Optional[int] = None):
        self.root = Path(root or config.CARD_STORAGE_DIR)
        self.max_bytes = max_bytes or config.MAX_CARD_IMAGE_BYTES

    def _get_object_path(self, user_id: str, image_id: str, extension: str) -> str:
        """Path format: {user_id}/{image_id}.{ext}"""
        return f"{user_id}/{image_id}.{extension}"

    def _resolve(self, reference: str) -> Path:
        if not reference.startswith(URL_SCHEME):
            raise StorageError(f"Unknown image reference: {reference}")
        relative = reference[len(URL_SCHEME):]
        path = (self.root / relative).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Image reference escapes storage root: {reference}")
        return path

    def validate(self, content_type: Optional[str], size: int) -> str:
        """Check type and size; return the file extension to store under."""
        extension = ALLOWED_CONTENT_TYPES.get((content_type or "").lower())
        if not extension:
            raise ValidationError(
                f"Unsupported image type '{content_type}'. "
                f"Allowed: {', '.join(sorted(set(ALLOWED_CONTENT_TYPES)))}"
            )
        if size == 0:
            raise ValidationError("Image is empty")
        if size > self.max_bytes:
            raise ValidationError(
                f"Image is too large ({size} bytes, max {self.max_bytes})"
            )
        return extension

    def upload(self, user_id: str, data: bytes, content_type: Optional[str]) -> str:
        """
        Store an image for a user.

        Returns:
            Reference of the form cards://{user_id}/{image_id}.{ext}
        """
        extension = self.validate(content_type, len(data))
        object_path = self._get_object_path(user_id, uuid.uuid4().hex, extension)
        target = self.root / object_path

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            logger.error(f"Failed to store card image {object_path}: {e}")
            raise StorageError(f"Failed to store card image: {e}") from e

        logger.info(f"Stored card image {object_path} ({len(data)} bytes)")
        return f"{URL_SCHEME}{object_path}"

    def download(self, reference: str) -> bytes:
        path = self._resolve(reference)
        try:
            return path.read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to fetch card image: {e}") from e

    def delete(self, reference: str) -> bool:
        path = self._resolve(reference)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete card image: {e}") from e
        return True
