"""
Helpers for naming and addressing generated report files.
"""

import re
import uuid
from datetime import datetime
from typing import Optional
from urllib.parse import quote


def sanitize_for_path(text: str) -> str:
    """
    Sanitize text for use in filesystem paths.

    Removes special characters (except word chars, spaces, hyphens)
    and replaces spaces with underscores.

    Example:
        >>> sanitize_for_path("North Gate (Zone 2)")
        "North_Gate__Zone_2_"
    """
    cleaned = re.sub(r'[^\w\s-]', '_', text.strip())
    return cleaned.replace(" ", "_")


def generate_report_filename(
    record_id: str,
    label: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    Build a collision-free file name for one render job.

    Format: Report-<YYYYMMDD>-<label>-<recordId>-<HHMMSSffffff>-<8 hex>.pdf
    The label segment is dropped when no label is given. The random suffix
    keeps names distinct for concurrent jobs within the same microsecond.
    """
    now = now or datetime.now()
    parts = ["Report", now.strftime("%Y%m%d")]
    if label and label.strip():
        parts.append(sanitize_for_path(label))
    parts.append(sanitize_for_path(record_id))
    parts.append(now.strftime("%H%M%S%f"))
    parts.append(uuid.uuid4().hex[:8])
    return "-".join(parts) + ".pdf"


def build_public_url(base_url: str, serving_path: str, filename: str) -> str:
    """
    Join the public base URL, the serving prefix and a file name.

    >>> build_public_url("https://x.example/", "/public/", "a b.pdf")
    'https://x.example/public/a%20b.pdf'
    """
    base = base_url.rstrip("/")
    prefix = serving_path.strip("/")
    if prefix:
        return f"{base}/{prefix}/{quote(filename)}"
    return f"{base}/{quote(filename)}"
