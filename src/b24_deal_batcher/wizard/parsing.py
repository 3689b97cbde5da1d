"""Parsing of free-text wizard answers. Bad input raises ValidationError."""

from typing import Optional

from b24_deal_batcher.errors import ValidationError

_YES = ("y", "yes", "д", "да")
_NO = ("n", "no", "н", "нет")


def parse_index(text: str, count: int) -> int:
    """0-based index into a list of `count` items."""
    try:
        idx = int(text.strip())
    except ValueError:
        raise ValidationError(f"Enter a number between 0 and {count - 1}.") from None
    if idx < 0 or idx >= count:
        raise ValidationError(f"Index out of range: enter 0..{count - 1}.")
    return idx


def parse_max_deals(text: str) -> Optional[int]:
    """Empty / 'all' means unbounded; otherwise a positive integer."""
    value = text.strip().lower()
    if value in ("", "all", "-", "0"):
        return None
    try:
        number = int(value)
    except ValueError:
        raise ValidationError("Enter a positive number, or 'all'.") from None
    if number < 1:
        raise ValidationError("Enter a positive number, or 'all'.")
    return number


def parse_yes_no(text: str, default: Optional[bool] = None) -> bool:
    value = text.strip().lower()
    if not value and default is not None:
        return default
    if value.startswith(_YES):
        return True
    if value.startswith(_NO):
        return False
    raise ValidationError("Answer yes or no.")


def parse_enum_mode(text: str) -> str:
    value = text.strip()
    if value == "1":
        return "cycle"
    if value == "2":
        return "single"
    raise ValidationError("Send 1 or 2.")
