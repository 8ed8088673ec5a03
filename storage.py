"""
Object storage for uploaded images.

Blobs live in MongoDB GridFS under a string path and are served back through
`GET /api/files/{path}`. Services only see `upload`, `delete` and public URLs.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Optional

import gridfs
from fastapi import UploadFile

import config
import database
from errors import ValidationError

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/webp")

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


@dataclass
class ImageFile:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @classmethod
    def from_upload(cls, upload: Optional[UploadFile]) -> Optional["ImageFile"]:
        if upload is None or not upload.filename:
            return None
        return cls(
            filename=upload.filename,
            content_type=upload.content_type or "application/octet-stream",
            data=upload.file.read(),
        )


def validate_image(image: Optional[ImageFile], required: bool = True) -> None:
    if image is None:
        if required:
            raise ValidationError("Image is required")
        return
    if image.content_type not in ALLOWED_IMAGE_TYPES:
        raise ValidationError("Invalid file format. Only JPG, PNG and WebP are allowed")
    if image.size > config.MAX_IMAGE_SIZE:
        max_mb = config.MAX_IMAGE_SIZE // (1024 * 1024)
        raise ValidationError(f"File is too large. Maximum size is {max_mb}MB")


def build_object_path(prefix: str, owner_id: str, image: ImageFile) -> str:
    if "." in image.filename:
        extension = image.filename.rsplit(".", 1)[-1].lower()
    else:
        extension = _EXTENSIONS.get(image.content_type, "bin")
    random_id = uuid.uuid4().hex[:8]
    return f"{prefix}/{owner_id}/{int(time.time() * 1000)}_{random_id}.{extension}"


class ObjectStore:
    """GridFS-backed blob store with public URLs."""

    def __init__(self, mongo_db, base_url: str = None):
        self.fs = gridfs.GridFS(mongo_db, collection="objects")
        self.base_url = (base_url or config.PUBLIC_BASE_URL).rstrip("/")

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/api/files/{path}"

    def path_from_url(self, url: str) -> Optional[str]:
        prefix = f"{self.base_url}/api/files/"
        if not url or not url.startswith(prefix):
            return None
        return url[len(prefix):]

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        self.fs.put(
            data,
            filename=path,
            metadata={"content_type": content_type, "uploaded_at": database.utc_now()},
        )
        return self.public_url(path)

    def delete(self, path: str) -> None:
        for stored in self.fs.find({"filename": path}):
            self.fs.delete(stored._id)

    def open(self, path: str):
        """Return the latest GridOut for `path`, or None."""
        try:
            return self.fs.get_last_version(filename=path)
        except gridfs.errors.NoFile:
            return None


def get_object_store() -> ObjectStore:
    return ObjectStore(database.collection("objects").database)


def upload_image(store, prefix: str, owner_id: str, image: ImageFile) -> str:
    path = build_object_path(prefix, owner_id, image)
    return store.upload(path, image.data, image.content_type)


def delete_image_quietly(store, url: Optional[str]) -> None:
    """Best-effort delete by public URL; failures are logged, never raised."""
    if not url:
        return
    path = store.path_from_url(url)
    if path is None:
        logger.warning("Skipping delete of image outside the store: %s", url)
        return
    try:
        store.delete(path)
    except Exception:
        logger.exception("Failed to delete image %s", path)
