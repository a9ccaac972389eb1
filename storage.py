"""
Image asset handling: upload validation, resizing and storage backends.

Two backends share one interface. S3 is used when AWS credentials are
configured, otherwise files land under ``settings.images_dir`` and are served
from ``/images``. Thumbnails live in a ``thumbnails`` folder beside the
primary asset in both backends.
"""
import io
import logging
import os
import time
import uuid
from typing import Any, Dict, List, Optional

import boto3
from PIL import Image as PILImage, ImageOps, UnidentifiedImageError

from errors import NotFoundError, ValidationError, best_effort
from settings import settings

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "webp"}
MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
}
WEB_MAX_SIZE = (1920, 1080)
WEB_QUALITY = 85
THUMBNAIL_SIZE = (300, 300)
THUMBNAIL_QUALITY = 70
LOCAL_URL_PREFIX = "/images"


def file_extension(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lstrip(".").lower()


def is_image_filename(filename: str) -> bool:
    return file_extension(filename) in ALLOWED_EXTENSIONS


def get_mime_type(filename: str) -> str:
    return MIME_TYPES.get(file_extension(filename), "application/octet-stream")


def validate_upload(filename: str, size: int) -> None:
    if not filename:
        raise ValidationError("Please upload an image file")
    if not is_image_filename(filename):
        raise ValidationError("Only image files are allowed!")
    if size > settings.max_upload_bytes:
        raise ValidationError(f"File too large; the limit is {settings.max_upload_bytes // (1024 * 1024)}MB")
    if size == 0:
        raise ValidationError("Uploaded file is empty")


def _to_jpeg(img: PILImage.Image, quality: int) -> bytes:
    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    out = io.BytesIO()
    img.save(out, format="JPEG", quality=quality)
    return out.getvalue()


def process_image(data: bytes) -> Dict[str, Any]:
    """Build the web variant and thumbnail for an uploaded image.

    Returns ``{"web": bytes, "thumbnail": bytes, "metadata": {...}}``; the
    metadata describes the original file.
    """
    try:
        img = PILImage.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError):
        raise ValidationError("Uploaded file is not a readable image")

    metadata = {
        "width": img.width,
        "height": img.height,
        "format": (img.format or "").lower() or None,
        "size": len(data),
    }
    img = ImageOps.exif_transpose(img)

    web = img.copy()
    # thumbnail() keeps aspect ratio and never enlarges
    web.thumbnail(WEB_MAX_SIZE)
    thumb = ImageOps.fit(img, THUMBNAIL_SIZE, centering=(0.5, 0.5))

    return {
        "web": _to_jpeg(web, WEB_QUALITY),
        "thumbnail": _to_jpeg(thumb, THUMBNAIL_QUALITY),
        "metadata": metadata,
    }


def unique_filename(original: str, prefix: str = "image") -> str:
    stem = os.path.splitext(os.path.basename(original or ""))[0] or prefix
    stem = "".join(c if c.isalnum() or c in "-_" else "-" for c in stem)[:40]
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}-{stem}.jpg"


class LocalStorage:
    def __init__(self, root: str, url_prefix: str = LOCAL_URL_PREFIX):
        self.root = root
        self.url_prefix = url_prefix.rstrip("/")

    def save(self, key: str, data: bytes, content_type: str) -> str:
        path = os.path.join(self.root, *key.split("/"))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
        return f"{self.url_prefix}/{key}"

    def owns(self, url: str) -> bool:
        return bool(url) and url.startswith(self.url_prefix + "/")

    def delete(self, url: str) -> None:
        key = url[len(self.url_prefix) + 1:]
        path = os.path.join(self.root, *key.split("/"))
        os.remove(path)


class S3Storage:
    def __init__(self, bucket: str, region: str, client=None):
        self.bucket = bucket
        self.region = region
        self.client = client or boto3.client(
            "s3",
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            region_name=region,
        )

    @property
    def base_url(self) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com"

    def save(self, key: str, data: bytes, content_type: str) -> str:
        self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        return f"{self.base_url}/{key}"

    def owns(self, url: str) -> bool:
        return bool(url) and "amazonaws.com" in url

    def delete(self, url: str) -> None:
        # https://<bucket>.s3.<region>.amazonaws.com/<key>
        key = url.split("/", 3)[3]
        self.client.delete_object(Bucket=self.bucket, Key=key)


_storage = None


def get_storage():
    global _storage
    if _storage is None:
        if settings.s3_enabled:
            _storage = S3Storage(settings.aws_bucket_name, settings.aws_region)
        else:
            _storage = LocalStorage(settings.images_dir)
    return _storage


def thumbnail_url_for(url: str) -> str:
    head, _, name = url.rpartition("/")
    return f"{head}/thumbnails/{name}"


def store_image(data: bytes, original_filename: str, directory: str = "portfolio", prefix: str = "image") -> Dict[str, Any]:
    """Process and store an image. Returns urls plus original-file metadata."""
    processed = process_image(data)
    storage = get_storage()
    filename = unique_filename(original_filename, prefix)
    image_url = storage.save(f"{directory}/{filename}", processed["web"], "image/jpeg")
    thumbnail_url = storage.save(f"{directory}/thumbnails/{filename}", processed["thumbnail"], "image/jpeg")
    logger.info("Stored image %s via %s", filename, type(storage).__name__)
    return {"image_url": image_url, "thumbnail_url": thumbnail_url, "metadata": processed["metadata"]}


def delete_image_assets(image_url: Optional[str], thumbnail_url: Optional[str] = None) -> None:
    """Remove an image and its thumbnail from whichever backend holds them.

    Missing files and backend errors are logged, never raised.
    """
    if not image_url:
        return
    storage = get_storage()
    if not storage.owns(image_url):
        logger.warning("Image %s is not held by %s; skipping asset cleanup", image_url, type(storage).__name__)
        return
    with best_effort(f"delete image {image_url}"):
        storage.delete(image_url)
    with best_effort(f"delete thumbnail for {image_url}"):
        storage.delete(thumbnail_url or thumbnail_url_for(image_url))


def list_image_files(directory: str) -> List[str]:
    if not os.path.isdir(directory):
        raise NotFoundError(f"Directory not found: {directory}")
    return sorted(f for f in os.listdir(directory) if is_image_filename(f) and os.path.isfile(os.path.join(directory, f)))


def import_from_directory(directory: str) -> List[Dict[str, Any]]:
    """Process every image file in a server-side directory into storage.

    All or nothing: if any file fails, assets stored for earlier files are
    removed before the error propagates.
    """
    results = []
    try:
        for name in list_image_files(directory):
            with open(os.path.join(directory, name), "rb") as f:
                data = f.read()
            validate_upload(name, len(data))
            stored = store_image(data, name, "portfolio", prefix="imported")
            results.append({"filename": name, **stored})
    except Exception:
        discard_imported(results)
        raise
    return results


def discard_imported(results: List[Dict[str, Any]]) -> None:
    for result in results:
        delete_image_assets(result["image_url"], result["thumbnail_url"])
