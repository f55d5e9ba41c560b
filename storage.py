import logging
import os
import secrets

from fastapi import UploadFile

from errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

URL_PREFIX = "/uploads"


class ImageStorage:
    """Stores uploaded images on local disk and hands back stable URLs."""

    def __init__(self, directory: str, max_bytes: int, allowed_extensions):
        self.directory = directory
        self.max_bytes = max_bytes
        self.allowed_extensions = set(allowed_extensions)

    def allowed_file(self, filename: str) -> bool:
        return "." in filename and filename.rsplit(".", 1)[1].lower() in self.allowed_extensions

    def save(self, upload: UploadFile) -> dict:
        filename = upload.filename or ""
        if not self.allowed_file(filename):
            raise ValidationError("Only image files are allowed")
        if upload.content_type and not upload.content_type.startswith("image/"):
            raise ValidationError("Only image files are allowed")

        data = upload.file.read(self.max_bytes + 1)
        if len(data) > self.max_bytes:
            raise ValidationError(f"File too large (limit {self.max_bytes} bytes)")

        _, ext = os.path.splitext(filename)
        stored = f"image-{secrets.token_hex(8)}{ext.lower()}"
        os.makedirs(self.directory, exist_ok=True)
        with open(os.path.join(self.directory, stored), "wb") as fh:
            fh.write(data)
        logger.info("stored upload %s as %s (%d bytes)", filename, stored, len(data))
        return {
            "filename": stored,
            "original_name": filename,
            "size": len(data),
            "url": f"{URL_PREFIX}/{stored}",
        }

    def delete(self, filename: str):
        # plain names only; no path components
        if os.path.basename(filename) != filename or filename in ("", ".", ".."):
            raise ValidationError("Invalid filename")
        path = os.path.join(self.directory, filename)
        if not os.path.isfile(path):
            raise NotFoundError("File not found")
        os.remove(path)
        logger.info("deleted upload %s", filename)
