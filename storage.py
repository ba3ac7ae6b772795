import base64
import logging
from dataclasses import dataclass
from typing import Optional

import cloudinary
import cloudinary.exceptions
import cloudinary.uploader

from config import Settings
from errors import DependencyFailure

logger = logging.getLogger(__name__)

AVATAR = "avatar"
FOOD = "food"

# Cloudinary folder and transformation per kind of image.
UPLOAD_PROFILES = {
    AVATAR: {
        "folder": "annadan/avatars",
        "transformation": [
            {"width": 400, "height": 400, "crop": "fill", "gravity": "face"},
            {"quality": "auto:good"},
        ],
    },
    FOOD: {
        "folder": "annadan/food-images",
        "transformation": [
            {"width": 800, "height": 600, "crop": "fill"},
            {"quality": "auto:good"},
        ],
    },
}


@dataclass
class ImageUpload:
    filename: str
    data: bytes
    content_type: str = "application/octet-stream"

    def as_data_uri(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.content_type};base64,{encoded}"


async def read_upload(file) -> Optional[ImageUpload]:
    """Turn a multipart form file into an ImageUpload; empty or missing files give None."""
    if file is None or isinstance(file, str):
        return None
    data = await file.read()
    if not data:
        return None
    return ImageUpload(
        filename=file.filename or "upload",
        data=data,
        content_type=file.content_type or "application/octet-stream",
    )


class CloudinaryImageStore:
    def __init__(self, settings: Settings):
        self.configured = settings.cloudinary_configured
        if self.configured:
            cloudinary.config(
                cloud_name=settings.cloudinary_cloud_name,
                api_key=settings.cloudinary_api_key,
                api_secret=settings.cloudinary_api_secret,
                secure=True,
            )

    def upload_image(self, image: ImageUpload, kind: str) -> str:
        """Upload an image and return its secure URL."""
        if kind not in UPLOAD_PROFILES:
            raise ValueError(f"unknown image kind: {kind}")
        if not self.configured:
            raise DependencyFailure("Image storage is not configured", status_code=503)

        try:
            result = cloudinary.uploader.upload(
                image.as_data_uri(),
                resource_type="auto",
                **UPLOAD_PROFILES[kind],
            )
        except cloudinary.exceptions.Error as exc:
            raise DependencyFailure(
                f"Failed to upload {kind} image", status_code=502
            ) from exc

        logger.info(
            "Uploaded %s image %s as %s", kind, image.filename, result.get("public_id")
        )
        return result["secure_url"]
