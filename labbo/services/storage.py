import uuid
from pathlib import Path
from typing import Tuple

import aiofiles
import aiofiles.os
from fastapi import HTTPException, UploadFile, status
from loguru import logger

from labbo.core import config

EQUIPMENT_DIR = "equipment"


def equipment_image_path(equipment_id: str, filename: str) -> Path:
    return Path(config.MEDIA_ROOT) / EQUIPMENT_DIR / equipment_id / Path(filename).name


async def save_equipment_image(equipment_id: str, upload: UploadFile) -> Tuple[str, str, int]:
    """
    Validates and writes an uploaded image under MEDIA_ROOT/equipment/<id>/.
    Returns (stored filename, public url, size in bytes).
    """
    extension = config.ALLOWED_IMAGE_TYPES.get(upload.content_type or "")
    if not extension:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Unsupported image type '{upload.content_type}'. Allowed: {sorted(config.ALLOWED_IMAGE_TYPES)}",
        )
    content = await upload.read(config.MAX_UPLOAD_BYTES + 1)
    if len(content) > config.MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Image exceeds the {config.MAX_UPLOAD_BYTES // (1024 * 1024)} MB limit.",
        )
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Uploaded file is empty.")

    filename = f"{uuid.uuid4().hex}{extension}"
    target = equipment_image_path(equipment_id, filename)
    await aiofiles.os.makedirs(target.parent, exist_ok=True)
    async with aiofiles.open(target, "wb") as f:
        await f.write(content)
    url = f"{config.MEDIA_URL}/{EQUIPMENT_DIR}/{equipment_id}/{filename}"
    logger.info(f"Stored image {filename} ({len(content)} bytes) for equipment {equipment_id}.")
    return filename, url, len(content)


async def delete_equipment_image(equipment_id: str, filename: str) -> bool:
    path = equipment_image_path(equipment_id, filename)
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        logger.warning(f"Image file {path} already missing.")
        return False
    return True
