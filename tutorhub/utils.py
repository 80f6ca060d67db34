import logging
import math
import os
from typing import Any, Iterable, List, Optional

from .errors import InvalidInput

# -------------------------------
# Logging
# -------------------------------

LOG_LEVEL = os.getenv("TUTORHUB_LOG_LEVEL", "INFO").upper()


def setup_logging() -> logging.Logger:
    """Configure the 'tutorhub' parent logger once; module loggers propagate to it."""
    logger = logging.getLogger("tutorhub")
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        logger.addHandler(handler)
    return logger


# -------------------------------
# Config: Tutor Approval Policy
# -------------------------------

_FALSY = {"0", "false", "no", "off"}


def auto_approve_enabled() -> bool:
    """Tutor applications skip moderation unless TUTORHUB_AUTO_APPROVE is switched off."""
    return os.getenv("TUTORHUB_AUTO_APPROVE", "1").strip().lower() not in _FALSY


# -------------------------------
# Normalisation
# -------------------------------

def clean_text(value: Optional[str]) -> str:
    return (value or "").strip()


def normalize_email(email: Optional[str]) -> str:
    return clean_text(email).lower()


def normalize_module_code(code: Any) -> str:
    return str(code).strip().upper() if code is not None else ""


def normalize_module_codes(codes: Iterable[Any]) -> List[str]:
    """Trim/uppercase each code, drop blanks, collapse duplicates (first one wins)."""
    out: List[str] = []
    seen = set()
    for c in codes:
        code = normalize_module_code(c)
        if code and code not in seen:
            seen.add(code)
            out.append(code)
    return out


# -------------------------------
# Input Coercion
# -------------------------------

# largest value a 64-bit signed INTEGER column holds
MAX_ID = 2**63 - 1


def parse_id(value: Any, field: str) -> int:
    """Turn a raw id (query string, JSON value) into an int or raise InvalidInput."""
    if isinstance(value, bool):
        raise InvalidInput(f"Invalid {field}")
    if isinstance(value, int):
        if not 1 <= value <= MAX_ID:
            raise InvalidInput(f"Invalid {field}")
        return value
    s = str(value).strip()
    if not s.isdecimal() or not 1 <= int(s) <= MAX_ID:
        raise InvalidInput(f"Invalid {field}")
    return int(s)


def parse_optional_id(value: Any, field: str) -> Optional[int]:
    if value is None or value == "":
        return None
    return parse_id(value, field)


def to_number(value: Any) -> Optional[float]:
    """Numeric coercion; returns None for anything that is not a finite number."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    return num if math.isfinite(num) else None


def coerce_rating(value: Any) -> int:
    num = to_number(value)
    if num is None or not num.is_integer() or num < 1 or num > 5:
        raise InvalidInput("rating must be between 1 and 5")
    return int(num)
