import os
import logging
import mimetypes
from uuid import uuid4

import boto3
import requests
from botocore.config import Config as BotoConfig

log = logging.getLogger("familytree-admin")

# R2 Configuration - for member profile images
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
S3_BUCKET = os.getenv("R2_BUCKET", "familytree-media")
PUBLIC_MEDIA_BASE = os.getenv("PUBLIC_MEDIA_BASE", "")

# Fallback upload service (multipart POST, answers {"path": ...})
UPLOAD_URL = os.getenv("UPLOAD_URL", "")
UPLOAD_TIMEOUT = 60

MAX_IMAGE_BYTES = 5 * 1024 * 1024  # 5MB


class StorageNotConfigured(RuntimeError):
    """Raised when required storage configuration is missing."""

    pass


class ImageRejected(ValueError):
    pass


def r2_configured() -> bool:
    return bool(R2_ACCOUNT_ID and R2_ACCESS_KEY_ID and R2_SECRET_ACCESS_KEY)


def s3_client():
    missing = []
    if not R2_ACCOUNT_ID:
        missing.append("R2_ACCOUNT_ID")
    if not R2_ACCESS_KEY_ID:
        missing.append("R2_ACCESS_KEY_ID")
    if not R2_SECRET_ACCESS_KEY:
        missing.append("R2_SECRET_ACCESS_KEY")
    if missing:
        raise StorageNotConfigured(
            "Missing R2 configuration: " + ", ".join(sorted(missing))
        )

    return boto3.client(
        "s3",
        endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
        region_name="auto",
        aws_access_key_id=R2_ACCESS_KEY_ID,
        aws_secret_access_key=R2_SECRET_ACCESS_KEY,
        config=BotoConfig(signature_version="s3v4", s3={"addressing_style": "virtual"}),
    )


def _public_url(key: str) -> str:
    if PUBLIC_MEDIA_BASE:
        return f"{PUBLIC_MEDIA_BASE.rstrip('/')}/{key}"
    return f"/{key}"


def _upload_to_r2(file_data: bytes, key: str, content_type: str) -> str:
    s3 = s3_client()
    s3.put_object(Bucket=S3_BUCKET, Key=key, Body=file_data, ContentType=content_type)
    url = _public_url(key)
    log.info(f"Stored profile image in R2: {key}")
    return url


def _upload_to_service(file_data: bytes, filename: str, content_type: str) -> str:
    try:
        response = requests.post(
            UPLOAD_URL,
            files={"file": (filename, file_data, content_type)},
            timeout=UPLOAD_TIMEOUT,
        )
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        log.error(f"Failed to upload profile image to {UPLOAD_URL}: {e}")
        if getattr(e, "response", None) is not None:
            log.error(f"Response status: {e.response.status_code}")
            log.error(f"Response text: {e.response.text}")
        raise

    path = (response.json() or {}).get("path")
    if not path:
        raise RuntimeError("Upload service response did not include a path")
    log.info(f"Stored profile image via upload service: {path}")
    return path


def store_profile_image(file_data: bytes, filename: str, content_type: str = "") -> str:
    """
    Store a member profile image and return the path/URL to persist on the member.

    Raises ImageRejected for non-images or files over 5MB, and
    StorageNotConfigured when neither R2 nor UPLOAD_URL is set.
    """
    content_type = content_type or mimetypes.guess_type(filename or "")[0] or ""
    if not content_type.startswith("image/"):
        raise ImageRejected("Profile image must be an image")
    if len(file_data) > MAX_IMAGE_BYTES:
        raise ImageRejected("Profile image too large (max 5MB)")

    file_extension = filename.rsplit(".", 1)[-1].lower() if filename and "." in filename else "jpg"
    unique_filename = f"{uuid4()}.{file_extension}"

    if r2_configured():
        return _upload_to_r2(file_data, f"members/{unique_filename}", content_type)
    if UPLOAD_URL:
        return _upload_to_service(file_data, unique_filename, content_type)
    raise StorageNotConfigured("Neither R2 nor UPLOAD_URL is configured for profile images")
