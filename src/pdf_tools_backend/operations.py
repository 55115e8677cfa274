"""
Document operations offered by the service.

Every operation works inside an existing job whose upload is stored as
``input.pdf`` and returns the file name of its result inside the job
directory. Stamping operations go through the page pipeline so each page is
stamped exactly once; whole-document operations call the toolchain directly.

Parameter problems raise ``InputError``. Tool, naming and filesystem failures
are logged and re-raised as ``OperationFailed`` carrying the short message
shown to clients.
"""

from __future__ import annotations

import base64
import binascii
import functools
import logging
import shutil
from collections import defaultdict
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from .errors import InputError, NamingResolutionError, OperationFailed, ToolFailure, WorkspaceError
from .models import EditAnnotation, PageRotation, PlacedSignature, RedactionArea
from .naming import RENDERED_PAGE, canonicalize
from .pipeline import RIGHT_ANGLES, PagePipeline, PageRange, PageTransformTask
from .stamps import Anchor, Color, StampDescriptor
from .toolchain import ImageLayer, OverlayLayer, PdfToolchain, PolylineLayer, TextLayer
from .utils import base_name_without_ext, build_output_name, clamp, ensure_directory
from .workspace import Job

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., str])

# Vertical distance from the page edge in points, by margin name
PAGE_NUMBER_MARGINS = {"small": 10, "normal": 20, "large": 40}
HEADER_FOOTER_MARGINS = {"small": 15, "normal": 25, "large": 45}

PAGE_NUMBER_FILL = Color.gray(0.15)
HEADER_FOOTER_FILL = Color.gray(0.1)
WATERMARK_FILL = Color.gray(0.5)
WATERMARK_POINTS = 48

HIGHLIGHT_COLOR = "#FFFF00"

# A full-page overlay image placed at the page origin
OVERLAY_DESCRIPTOR = StampDescriptor(position=Anchor.TOP_LEFT, offset=(0, 0), scale=1.0, rotation=0)

ALIGNMENTS = {"left": "l", "center": "c", "right": "r"}


def public_failure(message: str) -> Callable[[F], F]:
    """
    Translate core failures raised by an operation into ``OperationFailed(message)``.

    ``InputError`` passes through unchanged.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except (ToolFailure, NamingResolutionError, WorkspaceError, OSError) as exc:
                logger.error(f"{func.__name__}: {message}: {exc}")
                raise OperationFailed(message) from exc

        return wrapper  # type: ignore[return-value]

    return decorator


def decode_data_url(data_url: str) -> Optional[bytes]:
    """
    Decode a ``data:image/...;base64,`` URL.

    Returns:
        The image bytes, or None when the value is not a base64 image data URL
    """
    if not data_url.startswith("data:image"):
        return None
    _, sep, payload = data_url.partition(",")
    if not sep:
        return None
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        return None


def annotation_has_content(annotation: EditAnnotation) -> bool:
    if annotation.type == "text":
        return bool(annotation.content)
    if annotation.type == "image":
        return annotation.imageData.startswith("data:image")
    if annotation.type == "drawing":
        return len(annotation.drawingPath) > 1
    return False


def crop_box(left: int, right: int, top: int, bottom: int, description: str = "") -> str:
    """
    Build the pdfcpu crop box.

    Margins win over a free-form description; with neither a 10 point margin
    is removed on every side.

    Example:
        >>> crop_box(5, 0, 0, 15)
        '5 15 0 0'
    """
    if left > 0 or right > 0 or top > 0 or bottom > 0:
        return f"{left} {bottom} {right} {top}"
    description = description.strip()
    if description:
        return description
    return "10 10 10 10"


class PdfOperations:
    """
    Operation implementations shared by the HTTP handlers.

    Attributes:
        toolchain: External tool adapter
        pipeline: Split, per-page transform, merge
        redaction_dpi: Resolution pages are rasterized at before redaction
    """

    def __init__(self, toolchain: PdfToolchain, pipeline: PagePipeline, redaction_dpi: int = 300) -> None:
        self.toolchain = toolchain
        self.pipeline = pipeline
        self.redaction_dpi = redaction_dpi

    # -- stamping ---------------------------------------------------------------

    @public_failure("failed to add page numbers")
    def page_numbers(
        self,
        job: Job,
        original_name: str,
        position: Optional[str] = None,
        font_size: int = 10,
        opacity: float = 0.95,
        start_at: int = 1,
        margin: Optional[str] = None,
    ) -> str:
        """
        Stamp a running page label onto every page.

        Labels start at ``start_at`` on the first page. Bottom anchors are
        offset upwards from the edge and top anchors downwards.
        """
        anchor = Anchor.parse(position, Anchor.BOTTOM_CENTER)
        offset = PAGE_NUMBER_MARGINS.get((margin or "").strip(), PAGE_NUMBER_MARGINS["normal"])
        descriptor = StampDescriptor(
            position=anchor,
            offset=(0, -offset if anchor.is_top else offset),
            points=int(clamp(font_size, 6, 72)),
            rotation=0,
            opacity=clamp(opacity, 0.0, 1.0),
            fill_color=PAGE_NUMBER_FILL,
        )
        start_at = max(1, start_at)

        def stamp(task: PageTransformTask) -> None:
            self.toolchain.stamp_text(task.job.root, task.params, descriptor, task.source, task.output)

        output_name = build_output_name(original_name, "numbered")
        self.pipeline.run(
            job,
            job.input_path,
            output_name,
            stamp,
            params_for=lambda page: str(start_at + page - 1),
            name="page-numbers",
        )
        return output_name

    @public_failure("failed to add watermark")
    def watermark(
        self,
        job: Job,
        original_name: str,
        text: str,
        rotation: int = 45,
        opacity: float = 0.25,
        color: Optional[str] = None,
        layer: Optional[str] = None,
        pages: PageRange = PageRange(),
    ) -> str:
        """
        Add ``text`` diagonally across the selected pages.

        ``rotation`` is clockwise as seen by the user. ``layer`` of ``"over"``
        stamps in front of the page content, anything else puts the text
        behind it.
        """
        text = text.strip()
        if not text:
            raise InputError("text is required")

        descriptor = StampDescriptor(
            position=Anchor.CENTER,
            points=WATERMARK_POINTS,
            rotation=-rotation,
            opacity=clamp(opacity, 0.0, 1.0),
            fill_color=Color.from_hex(color) or WATERMARK_FILL,
        )
        background = (layer or "").strip() != "over"

        def stamp(task: PageTransformTask) -> None:
            self.toolchain.stamp_text(
                task.job.root, text, descriptor, task.source, task.output, watermark=background
            )

        output_name = build_output_name(original_name, "watermarked")
        self.pipeline.run(job, job.input_path, output_name, stamp, pages=pages, name="watermark")
        return output_name

    @public_failure("failed to add header or footer")
    def header_footer(
        self,
        job: Job,
        original_name: str,
        header_text: str = "",
        footer_text: str = "",
        header_align: Optional[str] = None,
        footer_align: Optional[str] = None,
        font_size: int = 12,
        margin: Optional[str] = None,
        pages: PageRange = PageRange(),
    ) -> str:
        header_text, footer_text = header_text.strip(), footer_text.strip()
        if not header_text and not footer_text:
            raise InputError("header or footer text is required")

        offset = HEADER_FOOTER_MARGINS.get((margin or "").strip(), HEADER_FOOTER_MARGINS["normal"])
        header = StampDescriptor(
            position=Anchor.parse("t" + ALIGNMENTS.get((header_align or "").strip(), "c"), Anchor.TOP_CENTER),
            offset=(0, -offset),
            points=font_size,
            rotation=0,
            opacity=1.0,
            fill_color=HEADER_FOOTER_FILL,
        )
        footer = StampDescriptor(
            position=Anchor.parse("b" + ALIGNMENTS.get((footer_align or "").strip(), "c"), Anchor.BOTTOM_CENTER),
            offset=(0, offset),
            points=font_size,
            rotation=0,
            opacity=1.0,
            fill_color=HEADER_FOOTER_FILL,
        )

        def stamp(task: PageTransformTask) -> None:
            root = task.job.root
            if header_text and footer_text:
                with_header = task.output.with_name(f"{task.output.stem}-header.pdf")
                self.toolchain.stamp_text(root, header_text, header, task.source, with_header)
                self.toolchain.stamp_text(root, footer_text, footer, with_header, task.output)
            elif header_text:
                self.toolchain.stamp_text(root, header_text, header, task.source, task.output)
            else:
                self.toolchain.stamp_text(root, footer_text, footer, task.source, task.output)

        output_name = build_output_name(original_name, "headerfooter")
        self.pipeline.run(job, job.input_path, output_name, stamp, pages=pages, name="header-footer")
        return output_name

    # -- rasterizing and overlays --------------------------------------------------

    @public_failure("failed to redact PDF")
    def redact(self, job: Job, original_name: str, areas: Sequence[RedactionArea]) -> str:
        """
        Black out rectangles by rasterizing the affected pages.

        Each page with at least one area is rendered to an image, painted and
        converted back, so no text survives underneath the rectangles. Other
        pages are kept as they are. The merged document is linearized with
        qpdf.
        """
        if not areas:
            raise InputError("at least one redaction area required")

        by_page: Dict[int, List[RedactionArea]] = defaultdict(list)
        for area in areas:
            by_page[area.page].append(area)

        def rasterize(task: PageTransformTask) -> None:
            root = task.job.root
            render_dir = ensure_directory(task.job.path("redact") / str(task.page))
            self.toolchain.render_png(root, task.source, render_dir / "page", self.redaction_dpi)
            image = canonicalize(render_dir, 1, RENDERED_PAGE)
            width, height = self.toolchain.image_size(root, image)

            rectangles: List[Tuple[int, int, int, int]] = []
            for area in task.params:
                x1, y1 = clamp(area.x, 0.0, 1.0), clamp(area.y, 0.0, 1.0)
                x2, y2 = clamp(area.x + area.width, 0.0, 1.0), clamp(area.y + area.height, 0.0, 1.0)
                rectangles.append((int(x1 * width), int(y1 * height), int(x2 * width), int(y2 * height)))

            painted = render_dir / "redacted.png"
            self.toolchain.draw_rectangles(root, image, rectangles, painted)
            self.toolchain.images_to_pdf(root, [painted], task.output)

        merged = self.pipeline.run(
            job,
            job.input_path,
            "redacted-merged.pdf",
            rasterize,
            pages=sorted(by_page),
            params_for=lambda page: by_page[page],
            name="redact",
        )
        output_name = build_output_name(original_name, "redacted")
        self.toolchain.optimize(job.root, merged.output, job.path(output_name))
        return output_name

    @public_failure("failed to sign PDF")
    def sign(self, job: Job, original_name: str, signatures: Sequence[PlacedSignature]) -> str:
        """
        Place signature images on their pages.

        Positions and sizes are percentages of the page, measured from the
        top-left corner. Signatures without an image data URL are ignored.
        """
        by_page: Dict[int, List[PlacedSignature]] = defaultdict(list)
        for signature in signatures:
            if signature.imageData.startswith("data:image"):
                by_page[signature.page].append(signature)
        if not by_page:
            raise InputError("no signatures provided")

        def overlay(task: PageTransformTask) -> None:
            width, height = self.toolchain.page_size(task.job.root, task.source)
            layers: List[OverlayLayer] = []
            for index, signature in enumerate(task.params):
                image = self._write_image(task.job, f"sig_p{task.page}_{index}.png", signature.imageData)
                if image is None:
                    logger.warning(f"[{task.job.id}] signature {signature.id or index} has unreadable image data")
                    continue
                layers.append(
                    ImageLayer(
                        image=image,
                        x=int(signature.x / 100.0 * width),
                        y=int(signature.y / 100.0 * height),
                        width=int(signature.width / 100.0 * width),
                        height=int(signature.height / 100.0 * height),
                    )
                )
            self._stamp_overlay(task, width, height, layers)

        output_name = build_output_name(original_name, "signed")
        self.pipeline.run(
            job,
            job.input_path,
            output_name,
            overlay,
            pages=sorted(by_page),
            params_for=lambda page: by_page[page],
            name="sign",
        )
        return output_name

    @public_failure("failed to apply annotations to PDF")
    def edit(self, job: Job, original_name: str, annotations: Sequence[EditAnnotation]) -> str:
        """
        Draw text, image and freehand annotations onto their pages.

        Coordinates are percentages of the page. Text below 8 points is drawn
        at 16 points; yellow drawings are treated as a translucent highlighter.
        """
        by_page: Dict[int, List[EditAnnotation]] = defaultdict(list)
        for annotation in annotations:
            if annotation_has_content(annotation):
                by_page[annotation.page].append(annotation)
        if not by_page:
            raise InputError("no annotations provided")

        def overlay(task: PageTransformTask) -> None:
            width, height = self.toolchain.page_size(task.job.root, task.source)
            layers: List[OverlayLayer] = []
            for index, annotation in enumerate(task.params):
                layer = self._annotation_layer(task, index, annotation, width, height)
                if layer is not None:
                    layers.append(layer)
            self._stamp_overlay(task, width, height, layers)

        output_name = build_output_name(original_name, "edited")
        self.pipeline.run(
            job,
            job.input_path,
            output_name,
            overlay,
            pages=sorted(by_page),
            params_for=lambda page: by_page[page],
            name="edit",
        )
        return output_name

    @public_failure("failed to add text")
    def add_text(
        self,
        job: Job,
        original_name: str,
        text: str,
        page: int = 1,
        x: int = 50,
        y: int = 50,
        font_size: int = 12,
        color: str = "#000000",
    ) -> str:
        """
        Write ``text`` on a single page, ``x``/``y`` points from its top-left corner.

        Page numbers past the end address the last page.
        """
        if not text:
            raise InputError("text is required")
        total = self.toolchain.page_count(job.root, job.input_path, prefer_poppler=True)
        page = min(max(1, page), total)

        def overlay(task: PageTransformTask) -> None:
            width, height = self.toolchain.page_size(task.job.root, task.source)
            layer = TextLayer(x=x, y=y, text=text, font_size=font_size, color=color or "#000000")
            self._stamp_overlay(task, width, height, [layer])

        output_name = build_output_name(original_name, "annotated")
        self.pipeline.run(job, job.input_path, output_name, overlay, pages=[page], name="add-text")
        return output_name

    def _annotation_layer(
        self,
        task: PageTransformTask,
        index: int,
        annotation: EditAnnotation,
        width: float,
        height: float,
    ) -> Optional[OverlayLayer]:
        x = annotation.x / 100.0 * width
        y = annotation.y / 100.0 * height
        color = annotation.color or "#000000"

        if annotation.type == "text":
            font_size = annotation.fontSize if annotation.fontSize >= 8 else 16
            return TextLayer(x=int(x), y=int(y), text=annotation.content, font_size=font_size, color=color)

        if annotation.type == "image":
            image = self._write_image(task.job, f"img_{task.page}_{index}.png", annotation.imageData)
            if image is None:
                logger.warning(f"[{task.job.id}] annotation {annotation.id or index} has unreadable image data")
                return None
            image_width = int(annotation.width / 100.0 * width)
            image_height = int(annotation.height / 100.0 * height)
            if image_width < 10:
                image_width = int(width * 0.3)
            if image_height < 10:
                image_height = int(height * 0.3)
            return ImageLayer(image=image, x=int(x), y=int(y), width=image_width, height=image_height)

        highlight = color.upper() == HIGHLIGHT_COLOR
        return PolylineLayer(
            points=tuple((point.x / 100.0 * width, point.y / 100.0 * height) for point in annotation.drawingPath),
            color=HIGHLIGHT_COLOR + "80" if highlight else color,
            stroke_width=12 if highlight else 3,
        )

    def _write_image(self, job: Job, filename: str, data_url: str) -> Optional[Path]:
        data = decode_data_url(data_url)
        if data is None:
            return None
        path = ensure_directory(job.path("overlays")) / filename
        path.write_bytes(data)
        return path

    def _stamp_overlay(
        self,
        task: PageTransformTask,
        width: float,
        height: float,
        layers: Sequence[OverlayLayer],
    ) -> None:
        if not layers:
            logger.warning(f"[{task.job.id}] nothing to draw on page {task.page}, keeping it unchanged")
            shutil.copyfile(task.source, task.output)
            return
        overlay = ensure_directory(task.job.path("overlays")) / f"overlay_{task.page}.png"
        self.toolchain.compose_overlay(task.job.root, int(width), int(height), layers, overlay)
        self.toolchain.stamp_image(task.job.root, overlay, OVERLAY_DESCRIPTOR, task.source, task.output)

    # -- page structure -----------------------------------------------------------

    @public_failure("failed to organize PDF")
    def organize(
        self,
        job: Job,
        original_name: str,
        order: str,
        rotations: Sequence[PageRotation] = (),
    ) -> str:
        """
        Rotate individual pages, then keep, drop and reorder pages as listed in ``order``.

        ``order`` is a pdfcpu page selection such as ``"3,1-2"``.
        """
        order = order.strip()
        if not order:
            raise InputError("order is required")

        work = job.path("work.pdf")
        shutil.copyfile(job.input_path, work)
        applied = self.pipeline.rotate_groups(
            job, work, ((rotation.pageNumber, rotation.degrees) for rotation in rotations)
        )
        if applied:
            logger.info(f"[{job.id}] organize: rotated pages by {applied}")

        output_name = build_output_name(original_name, "organized")
        self.toolchain.collect(job.root, work, order, job.path(output_name))
        return output_name

    @public_failure("failed to rotate PDF")
    def rotate(self, job: Job, original_name: str, degrees: int = 90) -> str:
        if degrees not in RIGHT_ANGLES:
            raise InputError("degrees must be 90, 180, or 270")
        output_name = build_output_name(original_name, "rotated")
        self.toolchain.rotate(job.root, job.input_path, degrees, output=job.path(output_name))
        return output_name

    @public_failure("failed to crop PDF")
    def crop(
        self,
        job: Job,
        original_name: str,
        margin_left: int = 0,
        margin_right: int = 0,
        margin_top: int = 0,
        margin_bottom: int = 0,
        description: str = "",
        unit: str = "po",
    ) -> str:
        box = crop_box(margin_left, margin_right, margin_top, margin_bottom, description)
        output_name = build_output_name(original_name, "cropped")
        self.toolchain.crop(job.root, job.input_path, job.path(output_name), box, unit=unit.strip() or "po")
        return output_name

    @public_failure("failed to split PDF")
    def split(self, job: Job, original_name: str) -> str:
        """Split into single-page documents and return a zip archive of them."""
        pages = self.pipeline.split(job, job.input_path)
        zip_name = f"{base_name_without_ext(original_name) or 'output'}_split_pages.zip"
        archive = shutil.make_archive(
            base_name=str(job.path(zip_name)).removesuffix(".zip"),
            format="zip",
            root_dir=job.pages_dir,
        )
        logger.info(f"[{job.id}] split into {len(pages)} page(s): {Path(archive).name}")
        return zip_name

    # -- conversion -----------------------------------------------------------------

    @public_failure("HTML to PDF conversion failed")
    def html_to_pdf(self, job: Job, source: str, base_name: str) -> str:
        """
        Print an HTML document or web page to PDF with the headless browser.

        Args:
            job: Job receiving the output
            source: ``file://`` URL of a stored HTML file or an http(s) URL
            base_name: Stem of the produced file name
        """
        output_name = f"{base_name or 'document'}.pdf"
        output = job.path(output_name)
        self.toolchain.html_to_pdf(job.root, source, output)
        if not output.is_file():
            raise NamingResolutionError(f"browser produced no {output_name}")
        return output_name
