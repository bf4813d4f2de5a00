"""
Attachment validation for inbound chat requests.

Attachments arrive as {name, type, data} objects with base64 payloads
(optionally as data URLs). They are checked against count and size limits
before any upstream call and normalized into chat_store.Attachment records.
"""

import math
import re
from typing import Any, List, Optional

from config import runtime_config
from errors import ValidationError
from services.chat_store import Attachment

UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_valid_uuid(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    return bool(UUID_RE.match(value))


def extract_base64_data(data: Any) -> str:
    """Strip a data-URL prefix, returning the raw base64 text."""
    if not isinstance(data, str):
        return ""
    if data.startswith("data:") and "," in data:
        return data.split(",", 1)[1]
    return data


def estimate_bytes_from_base64(data: str) -> int:
    """Decoded size of a base64 string without decoding it."""
    if not data:
        return 0
    padding = 2 if data.endswith("==") else 1 if data.endswith("=") else 0
    return math.floor(len(data) * 3 / 4) - padding


def validate_and_normalize_attachments(attachments: Any, config=None) -> List[Attachment]:
    """Check limits and normalize attachments.

    Args:
        attachments: The raw "attachments" value from the request (may be None)
        config: RuntimeConfig supplying the limits (defaults to runtime_config)

    Returns:
        List of Attachment with base64 data and bounded name/type

    Raises:
        ValidationError: wrong shape, too many, empty, or over a size limit
    """
    cfg = config or runtime_config
    if attachments is None:
        return []
    if not isinstance(attachments, list):
        raise ValidationError("Attachments must be an array", parameter="attachments", expected="array")

    if len(attachments) > cfg.max_attachments:
        raise ValidationError(
            f"Too many attachments (max {cfg.max_attachments})",
            parameter="attachments",
            received=str(len(attachments)),
        )

    max_mb = cfg.max_attachment_bytes // (1024 * 1024)
    max_total_mb = cfg.max_total_attachment_bytes // (1024 * 1024)
    total_bytes = 0
    normalized = []

    for att in attachments:
        if not isinstance(att, dict):
            raise ValidationError("Invalid attachment format", parameter="attachments")

        data = extract_base64_data(att.get("data"))
        if not data:
            raise ValidationError("Attachment data is missing", parameter="attachments")

        size = estimate_bytes_from_base64(data)
        if size <= 0:
            raise ValidationError("Attachment data is invalid", parameter="attachments")
        if size > cfg.max_attachment_bytes:
            raise ValidationError(f"Attachment exceeds max size ({max_mb}MB)", parameter="attachments")

        total_bytes += size
        if total_bytes > cfg.max_total_attachment_bytes:
            raise ValidationError(f"Total attachment size exceeds {max_total_mb}MB", parameter="attachments")

        name = _bounded(att.get("name"), cfg.max_attachment_name_length) or "attachment"
        mime_type = _bounded(att.get("type"), cfg.max_attachment_type_length) or "application/octet-stream"
        normalized.append(Attachment(name=name, type=mime_type, data=data))

    return normalized


def _bounded(value: Any, limit: int) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return value.strip()[:limit]
