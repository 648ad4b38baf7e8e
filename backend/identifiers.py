import re
from enum import Enum
from typing import Any

E164_RE = re.compile(r"^\+[1-9]\d{7,14}$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_email(value: Any) -> str:
    """Lowercase/trim an email. Anything that is not a non-empty string gives ''."""
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def normalize_phone(value: Any) -> str:
    """
    Canonicalize a phone number for comparisons.

    Keeps digits and a single leading '+'. A bare '00' international prefix
    becomes '+'; anything else stays as bare digits:
        '+1 (555) 000-0000' -> '+15550000000'
        '0044 20 7946 0000' -> '+442079460000'
        '555-0100'          -> '5550100'
    """
    if not isinstance(value, str):
        return ""
    trimmed = value.strip()
    if not trimmed:
        return ""
    cleaned = re.sub(r"[^\d+]", "", trimmed)
    if cleaned.startswith("+"):
        return "+" + cleaned[1:].replace("+", "")
    cleaned = cleaned.replace("+", "")
    if cleaned.startswith("00") and len(cleaned) > 2:
        return "+" + cleaned[2:]
    return cleaned


def is_e164_phone(value: Any) -> bool:
    return bool(E164_RE.match(normalize_phone(value)))


def looks_like_email(value: Any) -> bool:
    return bool(EMAIL_RE.match(normalize_email(value)))


class Role(str, Enum):
    MAIN_USER = "main_user"
    EMERGENCY_CONTACT = "emergency_contact"
    ADMIN = "admin"
    UNKNOWN = "unknown"


# Keys are compared after lowercasing and folding spaces/dashes to underscores.
ROLE_ALIASES = {
    "main_user": Role.MAIN_USER,
    "mainuser": Role.MAIN_USER,
    "user": Role.MAIN_USER,
    "primary": Role.MAIN_USER,
    "emergency_contact": Role.EMERGENCY_CONTACT,
    "emergencycontact": Role.EMERGENCY_CONTACT,
    "caregiver": Role.EMERGENCY_CONTACT,
    "carer": Role.EMERGENCY_CONTACT,
    "contact": Role.EMERGENCY_CONTACT,
    "emergency": Role.EMERGENCY_CONTACT,
    "admin": Role.ADMIN,
    "administrator": Role.ADMIN,
}


def normalize_role(value: Any) -> Role:
    if isinstance(value, Role):
        return value
    if not isinstance(value, str) or not value.strip():
        return Role.UNKNOWN
    key = re.sub(r"[\s\-]+", "_", value.strip().lower())
    return ROLE_ALIASES.get(key, Role.UNKNOWN)
