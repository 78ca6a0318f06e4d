import re
from typing import Optional

from wa_control.config import settings

_NON_DIGITS = re.compile(r"\D")
_JID_SUFFIX = re.compile(r"@.*$")


def normalize_phone(raw: Optional[str], country_code: Optional[str] = None) -> Optional[str]:
    """Canonical digits-only phone with country code, or None when nothing usable remains.

    Accepts formatted numbers ("+55 (48) 99999-0000") and WhatsApp JIDs
    ("5548999990000@s.whatsapp.net").
    """
    if not raw:
        return None
    country_code = country_code if country_code is not None else settings.default_country_code

    digits = _NON_DIGITS.sub("", _JID_SUFFIX.sub("", raw.strip()))
    digits = digits.lstrip("0")
    if len(digits) < 8:
        return None
    if country_code and not digits.startswith(country_code):
        digits = country_code + digits
    return digits


def phone_variations(phone: str) -> list[str]:
    """Brazilian mobiles exist with and without the 9th digit after the area code."""
    variations = [phone]
    if phone.startswith("55") and len(phone) == 12:
        variations.append(phone[:4] + "9" + phone[4:])
    elif phone.startswith("55") and len(phone) == 13 and phone[4] == "9":
        variations.append(phone[:4] + phone[5:])
    return variations
