"""
Utility functions for file system operations and form value parsing.

This module provides helper functions for:
- Sanitizing client-provided filenames for safe filesystem usage
- Deriving output artifact names from the uploaded filename
- Ensuring directory creation
- Lenient parsing of numeric form fields
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable, Optional

# Characters that are replaced when deriving an output name
# Allows: alphanumeric characters, dots, underscores, hyphens and spaces
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._ -]+")

# Stems that carry no information about the original upload
GENERIC_STEMS = {"", "input", "file"}


def sanitize_filename(name: str) -> str:
    """
    Reduce a client-provided filename to a single safe path component.

    Args:
        name: The filename as sent by the client, possibly including a path

    Returns:
        The base name with separators and unsafe characters replaced, or
        ``"file"`` when nothing usable remains

    Example:
        >>> sanitize_filename("../../etc/passwd")
        "passwd"
        >>> sanitize_filename("  report (final).pdf ")
        "report -final-.pdf"
    """
    name = name.strip().replace("\\", "/")
    name = name.rsplit("/", 1)[-1]
    cleaned = SANITIZE_PATTERN.sub("-", name).strip()
    cleaned = cleaned.lstrip(".")
    return cleaned or "file"


def base_name_without_ext(filename: str) -> str:
    path = Path(sanitize_filename(filename))
    return path.stem


def build_output_name(original_name: str, operation: str, extension: str = ".pdf") -> str:
    """
    Build the download name for an operation's result.

    Args:
        original_name: The uploaded filename
        operation: Short suffix describing the operation (e.g. ``"numbered"``)
        extension: Extension of the produced artifact, including the dot

    Returns:
        ``<stem>_<operation><extension>``, with ``output`` as stem when the
        upload name is generic

    Example:
        >>> build_output_name("Quarterly.pdf", "numbered")
        "Quarterly_numbered.pdf"
        >>> build_output_name("input.pdf", "rotated")
        "output_rotated.pdf"
    """
    stem = base_name_without_ext(original_name)
    if stem.lower() in GENERIC_STEMS:
        stem = "output"
    return f"{stem}_{operation}{extension}"


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def parse_int_default(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    value = value.strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def parse_float_default(value: Optional[str], default: float) -> float:
    if value is None:
        return default
    value = value.strip()
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def format_page_list(pages: Iterable[int]) -> str:
    return ",".join(str(page) for page in pages)
