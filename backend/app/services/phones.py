from __future__ import annotations

import re
from typing import Optional

DEFAULT_COUNTRY_CODE = "44"
NATIONAL_MIN_LENGTH = 9
NATIONAL_MAX_LENGTH = 10
PREFIXED_MIN_LENGTH = 10
SUFFIX_LENGTHS = (10, 9, 8, 7)

_PHONE_NOISE = re.compile(r"[^\d+]")


def _strip_trunk_prefix(digits: str) -> str:
    return digits[1:] if digits.startswith("0") else digits


def normalize_phone(raw: Optional[str], country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    if not raw:
        return ""
    cleaned = _PHONE_NOISE.sub("", str(raw))
    international = cleaned.startswith("+")
    digits = cleaned.replace("+", "")
    if international:
        digits = "00" + digits

    if digits.startswith("00"):
        rest = digits[2:]
        if country_code and rest.startswith(country_code):
            return _strip_trunk_prefix(rest[len(country_code) :])
        # Foreign number: keep its own calling code, there is no trunk prefix to drop.
        return rest

    if (
        country_code
        and digits.startswith(country_code)
        and len(digits) - len(country_code) >= NATIONAL_MIN_LENGTH
    ):
        digits = digits[len(country_code) :]
    return _strip_trunk_prefix(digits)


def phone_variations(
    raw: Optional[str], country_code: str = DEFAULT_COUNTRY_CODE
) -> tuple[str, ...]:
    """Return the variation set of ``raw``, most specific form first.

    Trailing-digit suffixes are only produced for numbers of national length.
    A longer canonical number carries a foreign or unknown prefix, and its
    suffixes would be unrelated local numbers.
    """
    canonical = normalize_phone(raw, country_code)
    if not canonical:
        return ()

    ordered: list[str] = [canonical]
    if len(canonical) >= PREFIXED_MIN_LENGTH:
        ordered.append("0" + canonical)
        if country_code:
            ordered.append(country_code + canonical)
            ordered.append("+" + country_code + canonical)
    if len(canonical) <= NATIONAL_MAX_LENGTH:
        ordered.extend(
            canonical[-length:] for length in SUFFIX_LENGTHS if len(canonical) >= length
        )
    return tuple(dict.fromkeys(ordered))


def variations_intersect(
    first: Optional[str], second: Optional[str], country_code: str = DEFAULT_COUNTRY_CODE
) -> bool:
    first_set = set(phone_variations(first, country_code))
    if not first_set:
        return False
    return not first_set.isdisjoint(phone_variations(second, country_code))
