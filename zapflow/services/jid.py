"""WhatsApp JID helpers.

A JID is the gateway's address for a chat: `<user>@<server>`. The same person
can show up as a phone JID (`5511987654321@s.whatsapp.net`, legacy `@c.us`)
or as a privacy-preserving linked id (`123456789@lid`), which is why contact
identity cannot rely on the JID alone.
"""

import re
from enum import Enum
from typing import Optional

PHONE_SUFFIXES = ("@s.whatsapp.net", "@c.us")
GROUP_SUFFIX = "@g.us"
LID_SUFFIX = "@lid"
BROADCAST_SUFFIX = "@broadcast"

PHONE_MATCH_DIGITS = 10
MIN_COMPARABLE_DIGITS = 8

_STRIP_SUFFIX_RE = re.compile(r"@(s\.whatsapp\.net|c\.us|lid)$", re.IGNORECASE)
_LID_OR_RAW_RE = (
    re.compile(r"@lid\s*$", re.IGNORECASE),
    re.compile(r"@s\.whatsapp\.net\s*$", re.IGNORECASE),
    re.compile(r"^\+?\d+$"),
)
_FORMATTED_NUMBER_RE = re.compile(r"^\+\d{2}\s\d{2}\s\d{4,5}-\d{4,}$")


class JidKind(str, Enum):
    PHONE = "phone"
    GROUP = "group"
    LID = "lid"
    BROADCAST = "broadcast"
    UNKNOWN = "unknown"


def classify_jid(jid: Optional[str]) -> JidKind:
    if not jid:
        return JidKind.UNKNOWN
    lowered = jid.strip().lower()
    if lowered.endswith(GROUP_SUFFIX):
        return JidKind.GROUP
    if lowered.endswith(LID_SUFFIX):
        return JidKind.LID
    if lowered.endswith(PHONE_SUFFIXES):
        return JidKind.PHONE
    if lowered.endswith(BROADCAST_SUFFIX):
        return JidKind.BROADCAST
    return JidKind.UNKNOWN


def is_phone_jid(jid: Optional[str]) -> bool:
    return bool(jid) and jid.strip().lower().endswith("@s.whatsapp.net")


def strip_jid_suffix(jid: Optional[str]) -> str:
    """`5511...@s.whatsapp.net` -> `5511...`; groups and unknown servers are kept as-is."""
    if not jid:
        return ""
    return _STRIP_SUFFIX_RE.sub("", jid.strip())


def normalize_digits(value: Optional[str]) -> str:
    if not value:
        return ""
    return re.sub(r"\D", "", str(value))


def phone_tail(value: Optional[str], length: int = PHONE_MATCH_DIGITS) -> str:
    digits = normalize_digits(value)
    return digits[-length:] if len(digits) > length else digits


def phones_match(left: Optional[str], right: Optional[str]) -> bool:
    """Same number when the last 10 digits agree; both sides need at least 8 digits."""
    left_digits = normalize_digits(left)
    right_digits = normalize_digits(right)
    if len(left_digits) < MIN_COMPARABLE_DIGITS or len(right_digits) < MIN_COMPARABLE_DIGITS:
        return False
    return phone_tail(left_digits) == phone_tail(right_digits)


def coerce_remote_jid(value) -> Optional[str]:
    if not value or isinstance(value, (dict, list, tuple)):
        return None
    text = str(value).strip()
    if not text:
        return None
    if "@" in text:
        return text
    digits = normalize_digits(text)
    if not digits:
        return None
    return f"{digits}@s.whatsapp.net"


def looks_like_lid_or_raw_number(value: Optional[str]) -> bool:
    text = (value or "").strip()
    if not text:
        return False
    return any(pattern.search(text) for pattern in _LID_OR_RAW_RE)


def is_formatted_number(value: Optional[str]) -> bool:
    text = (value or "").strip()
    return bool(text) and _FORMATTED_NUMBER_RE.match(text) is not None


def format_phone_from_digits(value: Optional[str]) -> Optional[str]:
    """Display form `+55 11 98765-4321`; short numbers become `+<digits>`."""
    digits = normalize_digits(value)
    if not digits:
        return None
    if len(digits) >= 10:
        return f"+{digits[:2]} {digits[2:4]} {digits[4:9]}-{digits[9:]}"
    return f"+{digits}"
