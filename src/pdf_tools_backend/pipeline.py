"""
Split, per-page transform, merge.

Stamping a document repeatedly with pdfcpu, each pass reading the previous
pass's output, leaves duplicated stamp resources in the final file. The page
pipeline avoids that by splitting the source into single-page documents,
transforming each page exactly once from its own original, and merging the
results in page order with a single merge call.

Every page task reads only its own split page, so tasks do not depend on each
other. They run sequentially and the first failure aborts the run: no merge
happens and no partial document is ever produced.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .errors import InputError, NamingResolutionError, PdfToolsError
from .naming import SPLIT_PAGE, canonicalize
from .registry import ArtifactRegistry
from .toolchain import PdfToolchain
from .utils import ensure_directory
from .workspace import Job

logger = logging.getLogger(__name__)

RIGHT_ANGLES = (90, 180, 270)


@dataclass(frozen=True)
class PageTransformTask:
    """
    One page's work item.

    Attributes:
        job: Job the page belongs to
        page: 1-based page index
        source: Canonical single-page split artifact
        output: Path the transform must produce
        params: Operation-specific parameters for this page
    """

    job: Job
    page: int
    source: Path
    output: Path
    params: Any = None


PageTransform = Callable[[PageTransformTask], None]


@dataclass(frozen=True)
class PipelineResult:
    output: Path
    page_count: int
    page_outputs: Tuple[Path, ...]
    transformed: Tuple[int, ...]


@dataclass(frozen=True)
class PageRange:
    """
    Inclusive page range as sent by clients.

    ``to_page`` of 0 (or past the end) means the last page; ``from_page``
    below 1 means the first page.
    """

    from_page: int = 1
    to_page: int = 0

    def resolve(self, total: int) -> List[int]:
        last = total if self.to_page <= 0 or self.to_page > total else self.to_page
        first = max(1, self.from_page)
        if first > last:
            raise InputError("fromPage must not be after toPage")
        return list(range(first, last + 1))


def group_rotations(rotations: Iterable[Tuple[int, int]]) -> Dict[int, List[int]]:
    """
    Bucket ``(page, degrees)`` pairs by normalized right angle.

    Angles are reduced modulo 360. Zero rotations, angles that are not a
    multiple of 90 and page numbers below 1 are dropped.

    Returns:
        Sorted page lists keyed by 90, 180 and 270, only for non-empty buckets
    """
    buckets: Dict[int, List[int]] = {angle: [] for angle in RIGHT_ANGLES}
    for page, degrees in rotations:
        angle = ((degrees % 360) + 360) % 360
        if angle not in buckets or page <= 0:
            continue
        buckets[angle].append(page)
    return {angle: sorted(pages) for angle, pages in buckets.items() if pages}


class PagePipeline:
    """
    Runs page-wise transformations inside a job directory.

    Attributes:
        toolchain: External tool adapter
        registry: Records per-page progress under ``pipeline:<name>:page-<n>`` roles
    """

    def __init__(self, toolchain: PdfToolchain, registry: Optional[ArtifactRegistry] = None) -> None:
        self.toolchain = toolchain
        self.registry = registry or ArtifactRegistry()

    def split(self, job: Job, source: Path) -> List[Path]:
        """
        Count pages and split ``source`` into ``pages/page_<n>.pdf``.

        Returns:
            Canonical single-page paths in page order

        Raises:
            ToolFailure: If counting or splitting fails
            NamingResolutionError: If a split page cannot be located
        """
        total = self.toolchain.page_count(job.root, source)
        pages_dir = ensure_directory(job.pages_dir)
        self.toolchain.extract_pages(job.root, source, pages_dir)
        pages = [canonicalize(pages_dir, page, SPLIT_PAGE) for page in range(1, total + 1)]
        logger.debug(f"[{job.id}] split {source.name} into {total} page(s)")
        return pages

    def run(
        self,
        job: Job,
        source: Path,
        output_name: str,
        transform: PageTransform,
        pages: Union[PageRange, Iterable[int], None] = None,
        params_for: Optional[Callable[[int], Any]] = None,
        name: str = "transform",
    ) -> PipelineResult:
        """
        Transform selected pages of ``source`` and merge all pages into ``output_name``.

        Args:
            job: Job owning every intermediate and final artifact
            source: Document to process
            output_name: File name of the merged result inside the job directory
            transform: Produces ``task.output`` from ``task.source``
            pages: Pages to transform, as a list or a client range; all when None.
                Other pages are merged unchanged
            params_for: Builds per-page parameters stored on each task
            name: Operation name used in registry roles and log lines

        Returns:
            The merged output and the per-page artifacts that went into it
        """
        split_pages = self.split(job, source)
        total = len(split_pages)
        if pages is None:
            selected = set(range(1, total + 1))
        elif isinstance(pages, PageRange):
            selected = set(pages.resolve(total))
        else:
            selected = {page for page in pages if 1 <= page <= total}

        stamped_dir = ensure_directory(job.path("stamped"))
        merge_inputs: List[Path] = []
        transformed: List[int] = []

        for page, page_source in enumerate(split_pages, start=1):
            if page not in selected:
                merge_inputs.append(page_source)
                continue

            task = PageTransformTask(
                job=job,
                page=page,
                source=page_source,
                output=stamped_dir / f"page-{page:04d}.pdf",
                params=params_for(page) if params_for else None,
            )
            role = f"pipeline:{name}:page-{page}"
            self.registry.begin(job.id, role)
            try:
                transform(task)
                if not task.output.is_file():
                    raise NamingResolutionError(f"page {page} produced no output at {task.output.name}")
            except (PdfToolsError, OSError) as exc:
                self.registry.fail(job.id, role, str(exc))
                logger.error(f"[{job.id}] {name}: page {page} of {total} failed: {exc}")
                raise
            self.registry.complete(job.id, role, task.output)
            merge_inputs.append(task.output)
            transformed.append(page)

        output = job.path(output_name)
        self.toolchain.merge(job.root, output, merge_inputs)
        logger.info(f"[{job.id}] {name}: merged {total} page(s), {len(transformed)} transformed")
        return PipelineResult(
            output=output,
            page_count=total,
            page_outputs=tuple(merge_inputs),
            transformed=tuple(transformed),
        )

    def rotate_groups(self, job: Job, path: Path, rotations: Iterable[Tuple[int, int]]) -> List[int]:
        """
        Rotate pages of ``path`` in place, one invocation per angle.

        Returns:
            The angles that were applied, in the order they were issued
        """
        applied: List[int] = []
        for angle, pages in sorted(group_rotations(rotations).items()):
            self.toolchain.rotate(job.root, path, angle, pages=pages)
            applied.append(angle)
        return applied
