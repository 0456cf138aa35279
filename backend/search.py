import re
import unicodedata
from typing import Optional

from errors import ValidationError

# Unicode letters, digits and underscore, plus space, tab, hyphen and dot.
_SEARCH_ALLOWED = re.compile(r"[\w \t.\-]+", re.UNICODE)

DEFAULT_SEARCH_MAX_LENGTH = 100


def validate_search(
    value: Optional[str], *, max_length: int = DEFAULT_SEARCH_MAX_LENGTH
) -> Optional[str]:
    """Trim free-text search input and reject anything outside the allow-list.

    Returns ``None`` when nothing searchable remains after trimming. The
    returned text is still raw; run it through :func:`escape_search` before it
    reaches a pattern match.
    """
    if value is None:
        return None
    # Decomposed input (combining marks) is composed so \w sees whole letters.
    candidate = unicodedata.normalize("NFC", str(value)).strip()
    if not candidate:
        return None
    if len(candidate) > max_length:
        raise ValidationError(
            f"search must be at most {max_length} characters",
            field="search",
            received_value=value,
        )
    if not _SEARCH_ALLOWED.fullmatch(candidate):
        raise ValidationError(
            "search contains disallowed characters",
            field="search",
            received_value=value,
        )
    return candidate


def escape_search(text: str) -> str:
    return re.escape(text)


def sanitize_search(
    value: Optional[str], *, max_length: int = DEFAULT_SEARCH_MAX_LENGTH
) -> Optional[str]:
    validated = validate_search(value, max_length=max_length)
    if validated is None:
        return None
    return escape_search(validated)


def search_as_integer(text: Optional[str]) -> Optional[int]:
    """Return the search text as an integer when it is one (order numbers)."""
    if not text or not (text.isascii() and text.isdecimal()):
        return None
    return int(text)
