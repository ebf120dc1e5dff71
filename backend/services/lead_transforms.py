"""
Lead Field Transforms

Value transforms applied to lead form answers while they are mapped onto
contact fields. Every transform is a pure string -> string function that
never raises: input it cannot interpret is returned unchanged, so a badly
formatted answer is kept rather than lost.
"""
import re
from typing import Callable, Dict, Optional

TRANSFORM_IDENTITY = ""
TRANSFORM_LOWERCASE = "lowercase"
TRANSFORM_UPPERCASE = "uppercase"
TRANSFORM_TRIM = "trim"
TRANSFORM_NAME_CAPITALIZE = "name_capitalize"
TRANSFORM_PHONE_E164 = "phone_e164"
TRANSFORM_PHONE_NATIONAL = "phone_national"

# E.164 allows at most 15 digits; anything under 8 is not a dialable subscriber number
MIN_PHONE_DIGITS = 8
MAX_PHONE_DIGITS = 15

_PHONE_ALLOWED = re.compile(r"^\+?[\d\s\-().\/]+$")
_NAME_PART = re.compile(r"[^\s\-']+")


def _capitalize_name(value: str) -> str:
    return _NAME_PART.sub(lambda m: m.group(0)[:1].upper() + m.group(0)[1:].lower(), value)


def to_e164_digits(value: str, default_country_code: Optional[str] = None) -> Optional[str]:
    """
    Parse a phone number into its E.164 digits (without the leading '+').

    Accepts international forms ("+31 6 1234 5678", "0031612345678") and,
    when a default country code is known, national forms with a trunk zero
    ("06-12345678") or without one ("612345678").

    Returns:
        Digit string, or None when the value is not a recognisable phone number
    """
    if value is None:
        return None
    candidate = value.strip()
    if not candidate or not _PHONE_ALLOWED.match(candidate):
        return None

    digits = re.sub(r"\D", "", candidate)
    if not digits:
        return None

    if candidate.startswith("+"):
        e164 = digits
    elif digits.startswith("00"):
        e164 = digits[2:]
    elif digits.startswith("0"):
        if not default_country_code:
            return None
        e164 = default_country_code + digits[1:]
    elif default_country_code and digits.startswith(default_country_code) and len(digits) >= 10:
        e164 = digits
    elif default_country_code:
        e164 = default_country_code + digits
    else:
        e164 = digits

    if e164.startswith("0") or not (MIN_PHONE_DIGITS <= len(e164) <= MAX_PHONE_DIGITS):
        return None
    return e164


def format_phone_e164(value: str, default_country_code: Optional[str] = None) -> str:
    e164 = to_e164_digits(value, default_country_code)
    if e164 is None:
        return value
    return f"+{e164}"


def format_phone_national(value: str, default_country_code: Optional[str] = None) -> str:
    e164 = to_e164_digits(value, default_country_code)
    if e164 is None:
        return value
    if default_country_code and e164.startswith(default_country_code):
        return "0" + e164[len(default_country_code):]
    # Foreign numbers have no national form here
    return f"+{e164}"


_SIMPLE_TRANSFORMS: Dict[str, Callable[[str], str]] = {
    TRANSFORM_LOWERCASE: lambda v: v.casefold(),  # "Strauß" -> "strauss", same as after uppercase
    TRANSFORM_UPPERCASE: lambda v: v.upper(),
    TRANSFORM_TRIM: lambda v: v.strip(),
    TRANSFORM_NAME_CAPITALIZE: _capitalize_name,
}

_PHONE_TRANSFORMS = {
    TRANSFORM_PHONE_E164: format_phone_e164,
    TRANSFORM_PHONE_NATIONAL: format_phone_national,
}

TRANSFORMS = frozenset([TRANSFORM_IDENTITY, *_SIMPLE_TRANSFORMS, *_PHONE_TRANSFORMS])


def apply_transform(value: Optional[str], transform: Optional[str], default_country_code: Optional[str] = None) -> str:
    """
    Apply a named transform to a lead field value.

    Unknown or empty transform names leave the value as is.
    """
    if value is None:
        value = ""
    if not transform:
        return value

    simple = _SIMPLE_TRANSFORMS.get(transform)
    if simple is not None:
        return simple(value)

    phone = _PHONE_TRANSFORMS.get(transform)
    if phone is not None:
        return phone(value, default_country_code)

    return value
