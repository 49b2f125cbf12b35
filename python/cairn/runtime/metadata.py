"""
cairn/runtime/metadata.py

Reads the `Metadata` JSON document at the root of an unpacked cluster image.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Optional

import aiofiles

from cairn.models.runtime import ImageMetadata
from cairn.models.validator import validate_type

logger = logging.getLogger(__name__)

METADATA_FILE = "Metadata"


async def load_image_metadata(image_root: str) -> Optional[ImageMetadata]:
    """
    Returns:
        The parsed metadata, or None if the image ships no Metadata file.

    Raises:
        ValueError: if the file exists but is not valid metadata.
    """
    path = os.path.join(image_root, METADATA_FILE)
    if not os.path.isfile(path):
        return None
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        raw = await f.read()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"failed to load image metadata {path}: {exc}") from exc
    metadata = validate_type(data, ImageMetadata)
    logger.info("Image metadata version %s (%s)", metadata.version, metadata.arch)
    return metadata
