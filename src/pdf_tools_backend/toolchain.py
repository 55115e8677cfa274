"""
Argument grammar of the external PDF and image tools.

Operations and the page pipeline describe what they need in terms of paths,
page numbers and structured values; ``PdfToolchain`` turns that into command
lines for pdfcpu, poppler, ImageMagick, qpdf and Chromium and hands them to
the ``ToolInvoker``. Program names come from configuration.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Tuple, Union

from .errors import ToolFailure
from .models import ToolSettings
from .stamps import StampDescriptor
from .utils import format_page_list

logger = logging.getLogger(__name__)

# US Letter in points, used when pdfinfo cannot report a page size
DEFAULT_PAGE_SIZE = (612.0, 792.0)


class Invoker(Protocol):
    def run(self, work_dir: Path, program: str, *args: Union[str, Path], timeout: Optional[float] = None) -> str:
        ...


@dataclass(frozen=True)
class TextLayer:
    x: int
    y: int
    text: str
    font_size: int
    color: str


@dataclass(frozen=True)
class ImageLayer:
    image: Path
    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class PolylineLayer:
    points: Tuple[Tuple[float, float], ...]
    color: str
    stroke_width: int


OverlayLayer = Union[TextLayer, ImageLayer, PolylineLayer]


def _parse_pages_line(output: str) -> Optional[int]:
    for line in output.splitlines():
        stripped = line.strip()
        if stripped.startswith("Pages:"):
            fields = stripped.split()
            if len(fields) >= 2:
                try:
                    count = int(fields[-1])
                except ValueError:
                    return None
                return count if count > 0 else None
    return None


def _parse_page_size(output: str) -> Optional[Tuple[float, float]]:
    # "Page size:      612 x 792 pts (letter)"
    for line in output.splitlines():
        if line.startswith("Page size:"):
            fields = line.split()
            if len(fields) >= 5:
                try:
                    return float(fields[2]), float(fields[4])
                except ValueError:
                    return None
            return None
    return None


class PdfToolchain:
    """
    Command builders for every external tool the service uses.

    Attributes:
        invoker: Executes the commands
        settings: Program names and time limits
    """

    def __init__(self, invoker: Invoker, settings: ToolSettings) -> None:
        self.invoker = invoker
        self.settings = settings

    def _run(self, work_dir: Path, tool: str, *args: Union[str, Path], timeout: Optional[float] = None) -> str:
        return self.invoker.run(
            work_dir,
            self.settings.program(tool),
            *args,
            timeout=timeout if timeout is not None else self.settings.timeout_seconds,
        )

    # -- document information -------------------------------------------------

    def page_count_pdfcpu(self, work_dir: Path, path: Path) -> int:
        output = self._run(work_dir, "pdfcpu", "info", path)
        count = _parse_pages_line(output)
        if count is None:
            raise ToolFailure([self.settings.program("pdfcpu"), "info", str(path)], output, 0, reason="reported no page count")
        return count

    def page_count_poppler(self, work_dir: Path, path: Path) -> int:
        output = self._run(work_dir, "pdfinfo", path)
        count = _parse_pages_line(output)
        if count is None:
            raise ToolFailure([self.settings.program("pdfinfo"), str(path)], output, 0, reason="reported no page count")
        return count

    def page_count(self, work_dir: Path, path: Path, prefer_poppler: bool = False) -> int:
        """
        Count pages with one tool and fall back to the other.

        Raises:
            ToolFailure: The fallback's failure when both tools fail
        """
        attempts = [self.page_count_poppler, self.page_count_pdfcpu]
        if not prefer_poppler:
            attempts.reverse()

        primary, fallback = attempts
        try:
            return primary(work_dir, path)
        except ToolFailure as exc:
            logger.warning(f"Page count via {primary.__name__} failed ({exc}); trying {fallback.__name__}")
        return fallback(work_dir, path)

    def page_size(self, work_dir: Path, path: Path) -> Tuple[float, float]:
        try:
            output = self._run(work_dir, "pdfinfo", path)
        except ToolFailure as exc:
            logger.warning(f"Page size lookup failed ({exc}); using US Letter")
            return DEFAULT_PAGE_SIZE
        return _parse_page_size(output) or DEFAULT_PAGE_SIZE

    # -- pdfcpu -----------------------------------------------------------------

    def extract_pages(self, work_dir: Path, source: Path, out_dir: Path) -> None:
        self._run(work_dir, "pdfcpu", "extract", "-mode", "page", source, out_dir)

    def stamp_text(
        self,
        work_dir: Path,
        text: str,
        descriptor: StampDescriptor,
        source: Path,
        output: Path,
        pages: Optional[Sequence[int]] = None,
        watermark: bool = False,
    ) -> None:
        """Stamp (foreground) or watermark (background) ``text`` onto ``source``."""
        args: List[Union[str, Path]] = ["watermark" if watermark else "stamp", "add", "-mode", "text"]
        if pages:
            args += ["-pages", format_page_list(pages)]
        args += ["--", text, descriptor.to_pdfcpu(), source, output]
        self._run(work_dir, "pdfcpu", *args)

    def stamp_image(
        self,
        work_dir: Path,
        image: Path,
        descriptor: StampDescriptor,
        source: Path,
        output: Path,
        pages: Optional[Sequence[int]] = None,
    ) -> None:
        args: List[Union[str, Path]] = ["stamp", "add", "-mode", "image"]
        if pages:
            args += ["-pages", format_page_list(pages)]
        args += ["--", image, descriptor.to_pdfcpu(), source, output]
        self._run(work_dir, "pdfcpu", *args)

    def merge(self, work_dir: Path, output: Path, sources: Sequence[Path]) -> None:
        self._run(work_dir, "pdfcpu", "merge", output, *sources)

    def rotate(
        self,
        work_dir: Path,
        source: Path,
        degrees: int,
        output: Optional[Path] = None,
        pages: Optional[Sequence[int]] = None,
    ) -> None:
        """
        Rotate the whole document, or only ``pages``, by ``degrees``.

        Page-list rotations are issued with the negated angle. Without
        ``output`` the file is rotated in place.
        """
        args: List[Union[str, Path]] = ["rotate"]
        if pages:
            args += ["-pages", format_page_list(pages), source, f"-{degrees}"]
        else:
            args += [source, str(degrees)]
        if output is not None:
            args.append(output)
        self._run(work_dir, "pdfcpu", *args)

    def collect(self, work_dir: Path, source: Path, order: str, output: Path) -> None:
        self._run(work_dir, "pdfcpu", "collect", "-pages", order, source, output)

    def crop(self, work_dir: Path, source: Path, output: Path, box: str, unit: str = "po") -> None:
        self._run(work_dir, "pdfcpu", "crop", "-u", unit, "--", box, source, output)

    # -- poppler / imagemagick / qpdf ------------------------------------------

    def render_png(
        self,
        work_dir: Path,
        source: Path,
        prefix: Path,
        dpi: int,
        first: Optional[int] = None,
        last: Optional[int] = None,
    ) -> None:
        """Render pages to ``<prefix>-<n>.png``; pdftoppm pads ``n`` to the page-count width."""
        args: List[Union[str, Path]] = ["-png", "-r", str(dpi)]
        if first is not None:
            args += ["-f", str(first)]
        if last is not None:
            args += ["-l", str(last)]
        args += [source, prefix]
        self._run(work_dir, "pdftoppm", *args)

    def image_size(self, work_dir: Path, image: Path) -> Tuple[int, int]:
        args = ["-format", "%w %h", str(image)]
        output = self._run(work_dir, "identify", *args)
        fields = output.split()
        try:
            return int(fields[0]), int(fields[1])
        except (IndexError, ValueError) as exc:
            command = [self.settings.program("identify"), *args]
            raise ToolFailure(command, output, 0, reason="reported no image size") from exc

    def draw_rectangles(
        self,
        work_dir: Path,
        image: Path,
        rectangles: Sequence[Tuple[int, int, int, int]],
        output: Path,
    ) -> None:
        args: List[Union[str, Path]] = [image, "-fill", "black"]
        for x1, y1, x2, y2 in rectangles:
            args += ["-draw", f"rectangle {x1},{y1} {x2},{y2}"]
        args.append(output)
        self._run(work_dir, "convert", *args)

    def compose_overlay(
        self,
        work_dir: Path,
        width: int,
        height: int,
        layers: Sequence[OverlayLayer],
        output: Path,
    ) -> None:
        """Draw ``layers`` onto a transparent ``width`` x ``height`` canvas."""
        args: List[Union[str, Path]] = ["-size", f"{width}x{height}", "xc:none"]
        for layer in layers:
            if isinstance(layer, TextLayer):
                escaped = layer.text.replace("\\", "\\\\").replace("'", "\\'")
                args += [
                    "-font", "DejaVu-Sans",
                    "-fill", layer.color,
                    "-pointsize", str(layer.font_size),
                    "-draw", f"text {layer.x},{layer.y + layer.font_size} '{escaped}'",
                ]
            elif isinstance(layer, ImageLayer):
                args += [
                    "(", layer.image, "-resize", f"{layer.width}x{layer.height}!", ")",
                    "-geometry", f"+{layer.x}+{layer.y}",
                    "-composite",
                ]
            else:
                points = " ".join(f"{x:.1f},{y:.1f}" for x, y in layer.points)
                args += [
                    "-stroke", layer.color,
                    "-strokewidth", str(layer.stroke_width),
                    "-fill", "none",
                    "-draw", f"polyline {points}",
                ]
        args.append(f"PNG32:{output}")
        self._run(work_dir, "convert", *args)

    def images_to_pdf(self, work_dir: Path, images: Sequence[Path], output: Path) -> None:
        self._run(work_dir, "convert", *images, output)

    def optimize(self, work_dir: Path, source: Path, output: Path) -> None:
        self._run(
            work_dir,
            "qpdf",
            "--warning-exit-0",
            "--linearize",
            "--compress-streams=y",
            "--object-streams=disable",
            source,
            output,
        )

    # -- headless browser -------------------------------------------------------

    def html_to_pdf(self, work_dir: Path, source: str, output: Path) -> None:
        self._run(
            work_dir,
            "chromium",
            "--headless",
            "--disable-gpu",
            "--no-sandbox",
            "--disable-dev-shm-usage",
            f"--print-to-pdf={output}",
            "--no-pdf-header-footer",
            source,
            timeout=self.settings.browser_timeout_seconds,
        )
