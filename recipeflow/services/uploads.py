"""Staging of uploaded image bytes into per-upload temp directories.

A staged upload is referenced by an ``upload://<token>`` locator until the image
fetcher hands its directory to a job, which removes it when the job finishes.
"""

import base64
import binascii
import logging
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional, Sequence, Tuple
from uuid import uuid4

from recipeflow.utils.errors import InvalidSubmissionError, UnsupportedSourceError

logger = logging.getLogger(__name__)

UPLOAD_SCHEME = "upload://"
UPLOAD_DIR_PREFIX = "recipeflow-upload-"

MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}
EXTENSION_MIMES = {ext: mime for mime, ext in MIME_EXTENSIONS.items()}


def detect_mime_type(data: bytes) -> Optional[str]:
    """Sniff the image type from its leading bytes."""
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    return None


def decode_image(encoded: str, mime_type: Optional[str] = None, field: str = "image") -> Tuple[bytes, str]:
    """
    Decode a base64 image, accepting data URLs and unpadded input.

    Returns:
        Tuple of (raw bytes, mime type)

    Raises:
        InvalidSubmissionError: If the payload is not decodable or not a supported image
    """
    payload = encoded.strip()
    if payload.startswith("data:") and "," in payload:
        header, payload = payload.split(",", 1)
        if not mime_type and ";" in header:
            mime_type = header[5:].split(";", 1)[0]
    payload = payload + "=" * (-len(payload) % 4)
    try:
        data = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError):
        try:
            data = base64.urlsafe_b64decode(payload)
        except (binascii.Error, ValueError):
            raise InvalidSubmissionError(field, "Invalid base64 encoding")
    if not data:
        raise InvalidSubmissionError(field, "Image data is required")

    mime = mime_type or detect_mime_type(data)
    if mime not in MIME_EXTENSIONS:
        raise InvalidSubmissionError(
            field, "Unsupported image type. Use JPEG, PNG, WebP, or GIF"
        )
    return data, mime


class UploadStager:
    """Writes uploaded images to disk and resolves their locators."""

    def __init__(
        self,
        temp_dir: Optional[str] = None,
        max_image_bytes: int = 10 * 1024 * 1024,
        max_images: int = 10,
    ) -> None:
        self.temp_dir = Path(temp_dir or tempfile.gettempdir())
        self.max_image_bytes = max_image_bytes
        self.max_images = max_images

    def validate(self, images: Sequence[Tuple[bytes, str]]) -> None:
        if not images:
            raise InvalidSubmissionError("images", "Image is required for image extraction")
        if len(images) > self.max_images:
            raise InvalidSubmissionError("images", f"At most {self.max_images} images per job")
        for i, (data, mime) in enumerate(images):
            if len(data) > self.max_image_bytes:
                limit_mb = self.max_image_bytes // (1024 * 1024)
                raise InvalidSubmissionError(f"images[{i}]", f"Image size exceeds {limit_mb}MB limit")
            if mime not in MIME_EXTENSIONS:
                raise InvalidSubmissionError(f"images[{i}].mimeType", "Unsupported image type")

    def stage(self, images: Sequence[Tuple[bytes, str]]) -> str:
        """
        Write images to a fresh upload directory.

        Returns:
            The ``upload://`` locator for the staged images
        """
        self.validate(images)
        token = uuid4().hex
        directory = self.temp_dir / f"{UPLOAD_DIR_PREFIX}{token}"
        directory.mkdir(parents=True)
        try:
            for i, (data, mime) in enumerate(images):
                (directory / f"image_{i:02d}{MIME_EXTENSIONS[mime]}").write_bytes(data)
        except OSError:
            shutil.rmtree(directory, ignore_errors=True)
            raise
        logger.info(f"Staged {len(images)} image(s) as upload {token}")
        return f"{UPLOAD_SCHEME}{token}"

    def resolve(self, locator: str) -> Path:
        """Directory holding the staged images for ``locator``."""
        if not locator.startswith(UPLOAD_SCHEME):
            raise UnsupportedSourceError(f"Not an upload reference: {locator}")
        token = locator[len(UPLOAD_SCHEME):]
        if not token or not token.isalnum():
            raise UnsupportedSourceError(f"Malformed upload reference: {locator}")
        directory = self.temp_dir / f"{UPLOAD_DIR_PREFIX}{token}"
        if not directory.is_dir():
            raise UnsupportedSourceError(f"Upload not found or expired: {locator}")
        return directory

    def files(self, locator: str) -> List[Tuple[Path, str]]:
        """Staged image files and their mime types, in upload order."""
        directory = self.resolve(locator)
        found = []
        for path in sorted(directory.iterdir()):
            mime = EXTENSION_MIMES.get(path.suffix.lower())
            if mime:
                found.append((path, mime))
        return found

    def discard(self, locator: str) -> None:
        try:
            directory = self.resolve(locator)
        except UnsupportedSourceError:
            return
        shutil.rmtree(directory, ignore_errors=True)
