"""
Serving finished artifacts and previews from the storage root.

Client paths have the form ``<jobId>/<file>`` (downloads) or
``<jobId>/previews/page-<n>.png`` (previews), optionally behind one of the
configured alias prefixes. Any ``..`` segment is refused before the
filesystem is touched.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Sequence

from .errors import ArtifactNotFoundError, PathForbiddenError
from .previews import PreviewMaterializer, parse_preview_page

logger = logging.getLogger(__name__)


def strip_prefix(request_path: str, prefixes: Sequence[str]) -> str:
    """Remove the first matching alias prefix, longest prefixes first."""
    for prefix in sorted(prefixes, key=len, reverse=True):
        if request_path.startswith(prefix):
            return request_path[len(prefix) :]
    return request_path


def split_client_path(relative: str) -> List[str]:
    """
    Split a client path into plain segments.

    Raises:
        PathForbiddenError: If any segment is ``..``
    """
    segments = [segment for segment in relative.replace("\\", "/").split("/") if segment not in ("", ".")]
    if any(segment == ".." for segment in segments):
        raise PathForbiddenError("forbidden")
    return segments


class ArtifactGateway:
    """
    Maps client paths to files inside the storage root.

    Attributes:
        root: Absolute storage root
        previews: Renders preview pages that do not exist yet
    """

    def __init__(
        self,
        root: Path,
        previews: PreviewMaterializer,
        download_prefixes: Sequence[str] = (),
        preview_prefixes: Sequence[str] = (),
    ) -> None:
        self.root = Path(root).resolve()
        self.previews = previews
        self.download_prefixes = list(download_prefixes)
        self.preview_prefixes = list(preview_prefixes)

    def locate(self, relative: str) -> Path:
        """
        Resolve a prefix-free client path to an existing file.

        Raises:
            PathForbiddenError: On traversal attempts or paths leaving the root
            ArtifactNotFoundError: If nothing servable exists at the path
        """
        return self._locate_segments(split_client_path(relative))

    def download(self, request_path: str) -> Path:
        return self.locate(strip_prefix(request_path, self.download_prefixes))

    def preview(self, request_path: str) -> Path:
        """
        Resolve a preview path, rendering a missing ``page-<n>.png`` on demand.

        Raises:
            PathForbiddenError: On traversal attempts
            ArtifactNotFoundError: If the path is not a preview page and does not exist
        """
        segments = split_client_path(strip_prefix(request_path, self.preview_prefixes))
        try:
            return self._locate_segments(segments)
        except ArtifactNotFoundError:
            page = parse_preview_page(segments[-1]) if len(segments) == 3 and segments[1] == "previews" else None
            if page is None:
                raise
        logger.info(f"[{segments[0]}] preview page {page} missing, rendering on demand")
        return self.previews.materialize(segments[0], page)

    def _locate_segments(self, segments: List[str]) -> Path:
        if not segments or any(segment.startswith(".") for segment in segments):
            raise ArtifactNotFoundError("file not found")

        candidate = self.root.joinpath(*segments)
        try:
            candidate.resolve().relative_to(self.root)
        except ValueError as exc:
            raise PathForbiddenError("forbidden") from exc

        if not candidate.is_file():
            raise ArtifactNotFoundError("file not found")
        return candidate
