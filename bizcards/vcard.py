"""vCard 3.0 rendering for employee records."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .models import UserRecord

PRODID = "-//Digital Business Cards Management System//EN"
NOTE = "Feel free to reach out through any channel. I look forward to working with you!"
ADDRESS_COUNTRY = "Taiwan"

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]+")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_revision(moment: datetime) -> str:
    """Format ``moment`` as an ISO-8601 basic UTC timestamp, e.g. ``20240102T030405Z``."""

    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y%m%dT%H%M%SZ")


def _single_line(value: str) -> str:
    return _CONTROL_CHARS.sub(" ", value).strip()


def escape_text(value: str) -> str:
    """Escape a TEXT property value: no line breaks, ``\\ ; ,`` backslash-escaped."""

    cleaned = _single_line(value)
    return cleaned.replace("\\", "\\\\").replace(";", "\\;").replace(",", "\\,")


def split_name(full_name: str) -> tuple[str, str]:
    """Return ``(family, given)``: the last and first whitespace-delimited tokens.

    A single-token name yields the same token for both parts.
    """

    tokens = full_name.split()
    if not tokens:
        return "", ""
    return tokens[-1], tokens[0]


def photo_url_for(record: UserRecord, base_url: str) -> str:
    return f"{base_url.rstrip('/')}/assets/{record.employee_id}-photo.jpg"


def build_vcard(
    record: UserRecord,
    *,
    base_url: str = "",
    now: Optional[Callable[[], datetime]] = None,
) -> str:
    family, given = split_name(record.full_name)
    lines: List[str] = [
        "BEGIN:VCARD",
        "VERSION:3.0",
        f"PRODID:{PRODID}",
        f"FN;CHARSET=UTF-8:{escape_text(record.full_name)}",
        f"N;CHARSET=UTF-8:{escape_text(family)};{escape_text(given)};;;",
        f"ORG;CHARSET=UTF-8:{escape_text(record.department)}",
        f"TITLE;CHARSET=UTF-8:{escape_text(record.title)}",
        f"EMAIL;TYPE=work:{_single_line(record.email)}",
    ]

    if record.phone:
        lines.append(f"TEL;TYPE=work,voice:{_single_line(record.phone)}")
    if record.linkedin_url:
        lines.append(f"URL;TYPE=work:{_single_line(record.linkedin_url)}")
    if record.github_url:
        lines.append(f"URL;TYPE=work:{_single_line(record.github_url)}")
    if record.address:
        lines.append(f"ADR;TYPE=work;CHARSET=UTF-8:;;{escape_text(record.address)};;;;{ADDRESS_COUNTRY}")
    if record.photo_url:
        lines.append(f"PHOTO;TYPE=JPEG:{photo_url_for(record, base_url)}")

    clock = now or _utcnow
    lines.extend(
        [
            f"NOTE;CHARSET=UTF-8:{escape_text(NOTE)}",
            f"REV:{format_revision(clock())}",
            "END:VCARD",
        ]
    )
    return "\n".join(lines)


__all__ = ["build_vcard", "escape_text", "format_revision", "photo_url_for", "split_name"]
