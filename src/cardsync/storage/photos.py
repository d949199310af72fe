"""Local filesystem storage for contact photos.

Photos are stored as ``<base_dir>/<user_id>/<person_id>.<ext>`` and the
person's ``photo`` column holds the bare filename.  Incoming photo values may
be a ``data:`` URI (what the vCard codec produces for embedded photos), bare
base64, or an http(s) URL which is downloaded.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

MAX_PHOTO_SIZE = 10 * 1024 * 1024
DOWNLOAD_TIMEOUT_SECONDS = 15.0

MIME_TO_EXT = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
}

_DATA_URI_RE = re.compile(r"^data:(image/[^;]+);base64,(.+)$", re.DOTALL)


class PhotoTooLargeError(ValueError):
    """Raised when photo data exceeds ``MAX_PHOTO_SIZE``."""


class PhotoStore(Protocol):
    """Protocol for person photo backends."""

    async def save(self, user_id: str, person_id: str, photo: str) -> str | None:
        """Persist ``photo`` for a person.

        Args:
            user_id: Owner of the person
            person_id: Person the photo belongs to
            photo: data URI, bare base64 or http(s) URL

        Returns:
            Stored filename, or None when the photo could not be stored
        """
        ...

    async def delete_person_photos(self, user_id: str, person_id: str) -> None:
        """Remove every stored photo of a person."""
        ...


def is_photo_filename(photo: str | None) -> bool:
    """True when ``photo`` is a stored filename rather than a URL or data URI."""
    if not photo:
        return False
    return not photo.startswith(("data:", "http://", "https://"))


def detect_image_extension(data: bytes) -> str:
    """Guess the extension from magic bytes; defaults to ``jpg``."""
    if data[:3] == b"\xff\xd8\xff":
        return "jpg"
    if data[:4] == b"\x89PNG":
        return "png"
    if data[:3] == b"GIF":
        return "gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    return "jpg"


def decode_photo_data(photo: str) -> tuple[bytes, str] | None:
    """Decode a data URI or bare base64 value into ``(bytes, extension)``.

    Returns:
        None for http(s) URLs, which must be downloaded instead

    Raises:
        ValueError: If the payload is not valid base64
    """
    if photo.startswith(("http://", "https://")):
        return None
    match = _DATA_URI_RE.match(photo)
    if match:
        mime_type, payload = match.groups()
        data = _b64decode(payload)
        return data, MIME_TO_EXT.get(mime_type.lower(), "jpg")
    data = _b64decode(photo)
    return data, detect_image_extension(data)


def _b64decode(payload: str) -> bytes:
    try:
        return base64.b64decode("".join(payload.split()), validate=True)
    except binascii.Error as exc:
        raise ValueError(f"Invalid base64 photo data: {exc}") from exc


class LocalPhotoStore:
    """Filesystem-backed photo store.

    Args:
        base_dir: Root directory; one subdirectory per user
        http_client: Optional client used to download photo URLs
    """

    def __init__(self, base_dir: Path | str, *, http_client: httpx.AsyncClient | None = None):
        self.base_dir = Path(base_dir).resolve()
        self._http_client = http_client

    def user_dir(self, user_id: str) -> Path:
        path = (self.base_dir / user_id).resolve()
        try:
            path.relative_to(self.base_dir)
        except ValueError as e:
            msg = f"Path traversal attempt detected: {user_id}"
            raise ValueError(msg) from e
        return path

    def path_for(self, user_id: str, filename: str) -> Path:
        """Absolute path of a stored photo filename."""
        return self.user_dir(user_id) / Path(filename).name

    async def save(self, user_id: str, person_id: str, photo: str) -> str | None:
        try:
            decoded = decode_photo_data(photo)
            if decoded is None:
                data, ext = await self._download(photo)
            else:
                data, ext = decoded
            if len(data) > MAX_PHOTO_SIZE:
                raise PhotoTooLargeError(
                    f"Photo exceeds maximum size of {MAX_PHOTO_SIZE // (1024 * 1024)}MB"
                )

            directory = self.user_dir(user_id)
            directory.mkdir(parents=True, exist_ok=True)
            await self.delete_person_photos(user_id, person_id)

            filename = f"{person_id}.{ext}"
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".photo-")
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(data)
                os.replace(tmp_path, directory / filename)
            except OSError:
                Path(tmp_path).unlink(missing_ok=True)
                raise
            return filename
        except (OSError, ValueError, httpx.HTTPError) as exc:
            logger.error("Failed to save photo for person %s: %s", person_id, exc)
            return None

    async def delete_person_photos(self, user_id: str, person_id: str) -> None:
        directory = self.user_dir(user_id)
        if not directory.is_dir():
            return
        for path in directory.iterdir():
            if path.stem == person_id and path.is_file():
                path.unlink(missing_ok=True)

    async def _download(self, url: str) -> tuple[bytes, str]:
        owns_client = self._http_client is None
        client = self._http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(DOWNLOAD_TIMEOUT_SECONDS), follow_redirects=True
        )
        try:
            response = await client.get(url, timeout=DOWNLOAD_TIMEOUT_SECONDS)
            response.raise_for_status()
            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > MAX_PHOTO_SIZE:
                raise PhotoTooLargeError(
                    f"Photo exceeds maximum size of {MAX_PHOTO_SIZE // (1024 * 1024)}MB"
                )
            data = response.content
            content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
            return data, MIME_TO_EXT.get(content_type) or detect_image_extension(data)
        finally:
            if owns_client:
                await client.aclose()
