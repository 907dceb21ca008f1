"""Thai phone number helpers."""
import re
from typing import Optional

_THAI_PHONE = re.compile(r"^0[2-9]\d{7,8}$")


def format_phone(phone: Optional[str]) -> str:
    """
    Normalize a phone number to the local Thai form.

    Strips whitespace and dashes and rewrites a +66/66 country prefix to 0:
    '+66 81-234-5678' -> '0812345678'.
    """
    if not phone:
        return ""
    cleaned = re.sub(r"\s+", "", phone).replace("-", "")
    if cleaned.startswith("+66"):
        cleaned = "0" + cleaned[3:]
    elif cleaned.startswith("66"):
        cleaned = "0" + cleaned[2:]
    return cleaned.strip()


def is_valid_thai_phone(phone: Optional[str]) -> bool:
    # mobile 08x/09x, landline 02x-07x
    return bool(_THAI_PHONE.match(format_phone(phone)))


def format_phone_display(phone: Optional[str]) -> str:
    formatted = format_phone(phone)
    if len(formatted) == 10:
        return f"{formatted[:3]}-{formatted[3:6]}-{formatted[6:]}"
    if len(formatted) == 9:
        return f"{formatted[:2]}-{formatted[2:5]}-{formatted[5:]}"
    return formatted


def tel_uri(phone: Optional[str]) -> str:
    return f"tel:{format_phone(phone)}"
