"""
Resolution of page artifacts produced by external tools.

Renderers and splitters disagree on how they name per-page output: pdftoppm
pads the page number to the width of the total page count (``page-3.png``
for a 5-page document, ``page-003.png`` for a 150-page one) and pdfcpu
prefixes split pages with the input stem (``input_page_3.pdf``). A
``NamingScheme`` lists the candidates for one logical role, canonical name
first, and the functions here find the file a tool actually produced and
move it to the canonical name so later steps never have to look again.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from .errors import NamingResolutionError

logger = logging.getLogger(__name__)

TRAILING_NUMBER = re.compile(r"(\d+)$")


@dataclass(frozen=True)
class NamingScheme:
    """
    Candidate filenames for one page-level artifact role.

    Attributes:
        patterns: ``str.format`` templates taking ``n``; the first is canonical
        fallback_glob: Glob tried when no pattern exists; a match counts when the
            trailing number of its stem equals the page, whatever the padding
    """

    patterns: Tuple[str, ...]
    fallback_glob: Optional[str] = None

    def canonical_name(self, page: int) -> str:
        return self.patterns[0].format(n=page)


SPLIT_PAGE = NamingScheme(
    patterns=("page_{n}.pdf", "input_page_{n}.pdf"),
    fallback_glob="*_page_*.pdf",
)

RENDERED_PAGE = NamingScheme(
    patterns=("page-{n}.png", "page-{n:02d}.png", "page-{n:03d}.png", "page-{n:04d}.png"),
    fallback_glob="*-*.png",
)


def resolve(directory: Path, page: int, scheme: NamingScheme) -> Path:
    """
    Find the file holding ``page`` for ``scheme`` inside ``directory``.

    Patterns are tried in order; the glob fallback returns the first match in
    sorted order so repeated calls against an unchanged directory agree.

    Raises:
        NamingResolutionError: If no candidate exists
    """
    for pattern in scheme.patterns:
        candidate = directory / pattern.format(n=page)
        if candidate.is_file():
            return candidate

    if scheme.fallback_glob:
        matches = sorted(
            path
            for path in directory.glob(scheme.fallback_glob)
            if path.is_file() and _trailing_number(path) == page
        )
        if matches:
            logger.debug(f"Resolved page {page} in {directory} through fallback glob: {matches[0].name}")
            return matches[0]

    raise NamingResolutionError(f"No artifact for page {page} in {directory}")


def canonicalize(directory: Path, page: int, scheme: NamingScheme, target: Optional[Path] = None) -> Path:
    """
    Resolve ``page`` and atomically rename it to its canonical path.

    Args:
        directory: Directory the producing tool wrote into
        page: Page number
        scheme: Naming scheme of the artifact role
        target: Destination path; defaults to the canonical name inside ``directory``

    Returns:
        The canonical path

    Raises:
        NamingResolutionError: If the page cannot be resolved or the rename fails
    """
    destination = target or directory / scheme.canonical_name(page)
    found = resolve(directory, page, scheme)
    if found == destination:
        return destination

    try:
        os.replace(found, destination)
    except OSError as exc:
        raise NamingResolutionError(f"Could not rename {found.name} to {destination.name}: {exc}") from exc
    return destination


def _trailing_number(path: Path) -> Optional[int]:
    match = TRAILING_NUMBER.search(path.stem)
    return int(match.group(1)) if match else None
