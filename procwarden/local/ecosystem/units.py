import re
from typing import Any, Dict

from procwarden.local.ecosystem.schema import EcosystemError

_MEMORY_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMG]?)B?\s*$", re.IGNORECASE)
_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$", re.IGNORECASE)

_MEMORY_FACTORS = {"": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3}
_DURATION_FACTORS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

# moment.js tokens used by log_date_format, longest first
_DATE_TOKENS: Dict[str, str] = {
    "YYYY": "%Y", "YY": "%y",
    "MMMM": "%B", "MMM": "%b", "MM": "%m",
    "DD": "%d", "dddd": "%A", "ddd": "%a",
    "HH": "%H", "hh": "%I", "mm": "%M", "ss": "%S",
    "A": "%p", "ZZ": "%z", "Z": "%z",
}
_DATE_TOKEN_RE = re.compile("|".join(sorted(_DATE_TOKENS, key=len, reverse=True)))


def parse_memory(value: Any, field: str = "max_memory_restart") -> int:
    """
    Parses a memory quantity into bytes.

    Integers are taken as bytes. Strings accept an optional K, M or G suffix
    (binary multiples), e.g. '500M' or '1.5G'.

    :param value: The raw value from the ecosystem file.
    :param field: Field name used in error messages.
    :return: The quantity in bytes, always positive.
    :raises EcosystemError: If the value is malformed or not positive.
    """
    if isinstance(value, bool):
        raise EcosystemError(f"'{field}' must be a memory quantity, got {value!r}")
    if isinstance(value, (int, float)):
        amount = int(value)
    else:
        match = _MEMORY_RE.match(str(value))
        if not match:
            raise EcosystemError(f"'{field}' is not a valid memory quantity: {value!r}")
        amount = int(float(match.group(1)) * _MEMORY_FACTORS[match.group(2).upper()])
    if amount <= 0:
        raise EcosystemError(f"'{field}' must be a positive byte quantity, got {value!r}")
    return amount


def parse_duration(value: Any, field: str) -> float:
    """
    Parses a duration into seconds.

    Bare numbers are milliseconds. Strings accept ms, s, m or h suffixes,
    e.g. '10s' or '4000'.

    :param value: The raw value from the ecosystem file.
    :param field: Field name used in error messages.
    :return: The duration in seconds, never negative.
    :raises EcosystemError: If the value is malformed or negative.
    """
    if isinstance(value, bool):
        raise EcosystemError(f"'{field}' must be a duration, got {value!r}")
    if isinstance(value, (int, float)):
        seconds = value / 1000.0
    else:
        match = _DURATION_RE.match(str(value))
        if not match:
            raise EcosystemError(f"'{field}' is not a valid duration: {value!r}")
        unit = (match.group(2) or "ms").lower()
        seconds = float(match.group(1)) * _DURATION_FACTORS[unit]
    if seconds < 0:
        raise EcosystemError(f"'{field}' must be a non-negative duration, got {value!r}")
    return seconds


def convert_date_format(moment_format: str) -> str:
    """
    Converts a moment.js style date format ('YYYY-MM-DD HH:mm:ss Z') into a
    strftime format. Text inside square brackets is kept literally.
    """
    parts = re.split(r"(\[[^\]]*\])", moment_format)
    converted = []
    for part in parts:
        if part.startswith("[") and part.endswith("]"):
            converted.append(part[1:-1].replace("%", "%%"))
        else:
            escaped = part.replace("%", "%%")
            converted.append(_DATE_TOKEN_RE.sub(lambda m: _DATE_TOKENS[m.group(0)], escaped))
    return "".join(converted)
