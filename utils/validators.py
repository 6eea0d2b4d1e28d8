import re
from typing import Optional


class ISBNValidator:
    """Lenient ISBN handling: values are normalised for storage, never rejected."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> Optional[str]:
        if raw is None:
            return None
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper() or None


class TextValidator:
    """Basic text clean-up for user supplied fields."""

    @staticmethod
    def clean(text: Optional[str]) -> Optional[str]:
        """Strip surrounding whitespace; blank strings become None."""
        if text is None:
            return None
        t = str(text).strip()
        return t or None
