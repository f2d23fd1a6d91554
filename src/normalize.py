"""Normalization of raw cell values into join keys and amounts."""

import math
import re
from decimal import Decimal, ROUND_HALF_UP

from models import Cell

_WHITESPACE = re.compile(r"\s+")
_NUMBER = re.compile(r"[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")


def normalize_key(value: Cell) -> str:
    """
    Turn a cell into a join key.

    Missing values become the empty string. Integral floats lose their
    fractional part so that ``100.0`` read from a workbook joins ``100``
    read from a CSV file. No trimming or case folding is applied.
    """
    if value is None:
        return ""
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return str(int(value))
    return str(value)


def normalize_amount(value: Cell) -> float:
    """
    Turn a cell into a numeric amount.

    Handles:
    - Empty cells -> 0
    - Whitespace, including thousand-separator spaces: "1 234,50" -> 1234.5
    - Decimal comma: "12,5" -> 12.5 (only the first comma is converted)
    - Anything non-numeric -> 0
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else 0.0

    text = _WHITESPACE.sub("", str(value)).replace(",", ".", 1)
    if not _NUMBER.fullmatch(text):
        return 0.0
    number = float(text)
    return number if math.isfinite(number) else 0.0


def round_money(value: float) -> float:
    """Round half-up to two decimals."""
    return float(Decimal(repr(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def format_amount(value: float) -> str:
    """Render an amount for messages: 120.0 -> "120", 12.5 -> "12.5"."""
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return "0" if text in ("", "-0") else text
