"""
Page thumbnails for uploaded documents.

Previews live at ``<job>/previews/page-<n>.png``. They are produced either
eagerly, all pages in one pdftoppm call while the preview request is still
open, or lazily, a single page when a thumbnail is fetched before it exists.

pdftoppm writes straight to its output file, so renders go to a hidden
staging directory first and each page is moved into ``previews/`` with an
atomic rename. A preview path therefore either does not exist or holds a
complete image.
"""

from __future__ import annotations

import logging
import re
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional
from uuid import uuid4

from .errors import ArtifactNotFoundError, NamingResolutionError, OperationFailed, ToolFailure
from .models import ArtifactState
from .naming import RENDERED_PAGE, canonicalize
from .registry import ArtifactRegistry
from .toolchain import PdfToolchain
from .utils import ensure_directory
from .workspace import Job, WorkspaceManager

logger = logging.getLogger(__name__)

PREVIEW_FILENAME = re.compile(r"^page-([1-9]\d*)\.png$")
STAGING_PREFIX = ".render-"


def preview_filename(page: int) -> str:
    return f"page-{page}.png"


def parse_preview_page(filename: str) -> Optional[int]:
    """
    Extract the page number from a canonical preview filename.

    Example:
        >>> parse_preview_page("page-7.png")
        7
        >>> parse_preview_page("page-07.png") is None
        True
        >>> parse_preview_page("thumb.png") is None
        True
    """
    match = PREVIEW_FILENAME.match(filename)
    if not match:
        return None
    return int(match.group(1))


def preview_role(page: int) -> str:
    return f"preview:page-{page}"


class PreviewMaterializer:
    """
    Renders preview thumbnails for a job's ``input.pdf``.

    Attributes:
        toolchain: External tool adapter
        workspaces: Resolves job ids to directories
        registry: Tracks per-page render state so concurrent lazy requests share one render
        dpi: Render resolution
        wait_timeout: Longest time a request waits for another request's render
    """

    def __init__(
        self,
        toolchain: PdfToolchain,
        workspaces: WorkspaceManager,
        registry: ArtifactRegistry,
        dpi: int = 110,
        wait_timeout: Optional[float] = None,
    ) -> None:
        self.toolchain = toolchain
        self.workspaces = workspaces
        self.registry = registry
        self.dpi = dpi
        self.wait_timeout = wait_timeout

    def render_all(self, job: Job) -> int:
        """
        Render every page of the job's input before any URL is handed out.

        Returns:
            The page count

        Raises:
            ToolFailure: If the page count cannot be determined

        Note:
            A failed render is logged and not raised. The affected pages stay
            unrendered and are produced lazily when first fetched.
        """
        total = self.toolchain.page_count(job.root, job.input_path, prefer_poppler=True)
        previews_dir = ensure_directory(job.previews_dir)

        with self._staging(previews_dir) as staging:
            try:
                self.toolchain.render_png(job.root, job.input_path, staging / "page", self.dpi)
            except ToolFailure as exc:
                logger.warning(f"[{job.id}] eager preview render failed, pages will render lazily: {exc}")
                return total

            for page in range(1, total + 1):
                target = previews_dir / preview_filename(page)
                try:
                    canonicalize(staging, page, RENDERED_PAGE, target=target)
                except NamingResolutionError as exc:
                    logger.warning(f"[{job.id}] preview page {page} missing after render: {exc}")
                    continue
                self.registry.complete(job.id, preview_role(page), target)

        logger.info(f"[{job.id}] rendered {total} preview page(s)")
        return total

    def materialize(self, job_id: str, page: int) -> Path:
        """
        Return the preview for ``page``, rendering it first if it is missing.

        Raises:
            ArtifactNotFoundError: If the job or its input document does not exist
            OperationFailed: If a concurrent render this call waited on failed
            ToolFailure: If this call's render fails
            NamingResolutionError: If the rendered page cannot be located
        """
        job = self.workspaces.open_job(job_id)
        target = job.previews_dir / preview_filename(page)
        if target.is_file():
            return target
        if not job.input_path.is_file():
            raise ArtifactNotFoundError(f"job {job_id} has no input document")

        role = preview_role(page)
        owner, record = self.registry.begin(job.id, role, timeout=self.wait_timeout)
        if not owner:
            if record.state == ArtifactState.DONE and record.path is not None and record.path.is_file():
                return record.path
            raise OperationFailed("failed to render preview")

        try:
            if not target.is_file():
                self._render_page(job, page, target)
        except BaseException as exc:
            self.registry.fail(job.id, role, str(exc) or type(exc).__name__)
            logger.error(f"[{job.id}] lazy preview of page {page} failed: {exc!r}")
            raise
        self.registry.complete(job.id, role, target)
        return target

    def _render_page(self, job: Job, page: int, target: Path) -> None:
        previews_dir = ensure_directory(job.previews_dir)
        with self._staging(previews_dir) as staging:
            self.toolchain.render_png(
                job.root,
                job.input_path,
                staging / "page",
                self.dpi,
                first=page,
                last=page,
            )
            canonicalize(staging, page, RENDERED_PAGE, target=target)
        logger.debug(f"[{job.id}] lazily rendered preview page {page}")

    @contextmanager
    def _staging(self, previews_dir: Path) -> Iterator[Path]:
        staging = previews_dir / f"{STAGING_PREFIX}{uuid4().hex}"
        staging.mkdir()
        try:
            yield staging
        finally:
            shutil.rmtree(staging, ignore_errors=True)
