"""
Structured stamp configuration for pdfcpu.

pdfcpu takes stamp and watermark settings as one descriptor string
(``"pos:bc, off:0 20, points:10, scale:1 abs, rot:0, op:0.95"``). Operations
build a ``StampDescriptor`` with named fields and this module is the only
place that knows the descriptor grammar.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class Anchor(str, Enum):
    TOP_LEFT = "tl"
    TOP_CENTER = "tc"
    TOP_RIGHT = "tr"
    LEFT = "l"
    CENTER = "c"
    RIGHT = "r"
    BOTTOM_LEFT = "bl"
    BOTTOM_CENTER = "bc"
    BOTTOM_RIGHT = "br"

    @classmethod
    def parse(cls, value: Optional[str], default: "Anchor") -> "Anchor":
        value = (value or "").strip().lower()
        for anchor in cls:
            if anchor.value == value:
                return anchor
        return default

    @property
    def is_top(self) -> bool:
        return self.value.startswith("t")


@dataclass(frozen=True)
class Color:
    """RGB color with components in 0..1."""

    red: float
    green: float
    blue: float

    @classmethod
    def from_hex(cls, value: Optional[str]) -> Optional["Color"]:
        """
        Parse ``#rrggbb`` or ``rrggbb``.

        Returns:
            The color, or None when the value is empty or not a 6-digit hex string
        """
        value = (value or "").strip().lstrip("#")
        if len(value) != 6:
            return None
        try:
            red, green, blue = (int(value[i : i + 2], 16) for i in (0, 2, 4))
        except ValueError:
            return None
        return cls(red / 255.0, green / 255.0, blue / 255.0)

    @classmethod
    def gray(cls, level: float) -> "Color":
        return cls(level, level, level)

    def to_pdfcpu(self) -> str:
        return f"{self.red:.2f} {self.green:.2f} {self.blue:.2f}"


@dataclass(frozen=True)
class StampDescriptor:
    """
    Placement and appearance of a text or image stamp.

    ``rotation`` is in pdfcpu's counterclockwise convention. ``points`` is only
    meaningful for text stamps. Fields left as None are omitted so pdfcpu
    applies its own default.
    """

    position: Anchor = Anchor.CENTER
    offset: Tuple[float, float] = (0, 0)
    points: Optional[int] = None
    scale: float = 1.0
    absolute_scale: bool = True
    rotation: Optional[int] = 0
    opacity: Optional[float] = None
    fill_color: Optional[Color] = None

    def to_pdfcpu(self) -> str:
        parts = [
            f"pos:{self.position.value}",
            f"off:{_number(self.offset[0])} {_number(self.offset[1])}",
        ]
        if self.points is not None:
            parts.append(f"points:{self.points}")
        scale = _number(self.scale)
        parts.append(f"scale:{scale} abs" if self.absolute_scale else f"scale:{scale} rel")
        if self.rotation is not None:
            parts.append(f"rot:{self.rotation}")
        if self.opacity is not None:
            parts.append(f"op:{self.opacity:.2f}")
        if self.fill_color is not None:
            parts.append(f"fillc:{self.fill_color.to_pdfcpu()}")
        return ", ".join(parts)


def _number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"
