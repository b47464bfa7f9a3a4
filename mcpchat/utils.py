"""Shared utility functions for mcpchat."""

from __future__ import annotations

import base64
import binascii
import logging
import re

logger = logging.getLogger(__name__)

_BASE64_RE = re.compile(r"[A-Za-z0-9+/]+={0,2}")

# Shorter strings are far more likely to be ordinary words than encoded payloads
MIN_BASE64_LENGTH = 16


def is_base64(text: str) -> bool:
    """Return True if text is a strictly valid base64 payload.

    No whitespace is tolerated, the length must be a multiple of 4 and
    at least MIN_BASE64_LENGTH characters.
    """
    if not isinstance(text, str) or len(text) < MIN_BASE64_LENGTH:
        return False
    if len(text) % 4 != 0 or not _BASE64_RE.fullmatch(text):
        return False
    try:
        base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return False
    return True


def detect_image_format(image_data: str) -> str:
    """Detect the media type of base64-encoded image data.

    Checks well-known base64 prefixes first, then the decoded magic bytes.
    Falls back to image/png when nothing matches.
    """
    header = image_data[:20]
    if header.startswith("/9j/"):
        return "image/jpeg"
    if header.startswith("iVBORw0KGgo"):
        return "image/png"

    try:
        # 16 chars decode to 12 bytes, enough for every signature below
        raw = base64.b64decode(image_data[:16], validate=False)
    except (binascii.Error, ValueError) as e:
        logger.warning("Could not detect image format, using default PNG: %s", e)
        return "image/png"

    if raw[:4] == b"\x89PNG":
        return "image/png"
    if raw[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if raw[:4] == b"RIFF":
        return "image/webp"
    if raw[:3] == b"GIF":
        return "image/gif"
    return "image/png"
