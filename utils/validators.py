import math
import re
from typing import Any, Iterable, List, Optional

from errors import ValidationError

ROLES = ("admin", "librarian", "member")
STAFF_ROLES = ("admin", "librarian")


class TextValidator:
    """Trimming and presence checks for free-text input."""

    @staticmethod
    def require(value: Any, field_name: str) -> str:
        """Return the trimmed value or raise ValidationError when it is blank."""
        if value is None or not isinstance(value, str):
            raise ValidationError(f"{field_name} is required.")
        cleaned = value.strip()
        if not cleaned:
            raise ValidationError(f"{field_name} is required.")
        return cleaned

    @staticmethod
    def validate_title(title: Optional[str]) -> str:
        return TextValidator.require(title, "Title")

    @staticmethod
    def validate_author(author: Optional[str]) -> str:
        return TextValidator.require(author, "Author")

    @staticmethod
    def normalize_tags(tags: Optional[Iterable[Any]], limit: Optional[int] = None) -> List[str]:
        """Trim tags, drop blanks and non-strings, dedupe keeping first occurrence."""
        out: List[str] = []
        for tag in tags or []:
            if not isinstance(tag, str):
                continue
            t = re.sub(r"\s+", " ", tag).strip()
            if t and t not in out:
                out.append(t)
        if limit is not None:
            out = out[:limit]
        return out


class QuantityValidator:

    @staticmethod
    def validate_total(value: Any) -> int:
        """A total copy count must be a finite whole number of at least 1."""
        # bool is an int subclass; True is not a quantity
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError("Total quantity must be a number.")
        if isinstance(value, float):
            if not math.isfinite(value) or not value.is_integer():
                raise ValidationError("Total quantity must be a whole number.")
            value = int(value)
        if value < 1:
            raise ValidationError("Total quantity must be at least 1.")
        return value


class RoleValidator:

    @staticmethod
    def validate_role(role: Optional[str]) -> str:
        r = (role or "").strip().lower()
        if r not in ROLES:
            raise ValidationError(f"Role must be one of: {', '.join(ROLES)}.")
        return r
