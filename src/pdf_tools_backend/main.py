from __future__ import annotations

import logging
import shutil
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, List, Optional, Type, TypeVar

from fastapi import APIRouter, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse
from pydantic import BaseModel, TypeAdapter, ValidationError

from .configuration import load_settings
from .errors import (
    ArtifactNotFoundError,
    InputError,
    NamingResolutionError,
    OperationFailed,
    PathForbiddenError,
    PdfToolsError,
    ToolFailure,
    WorkspaceError,
)
from .gateway import ArtifactGateway
from .models import (
    DownloadResponse,
    EditAnnotation,
    ErrorResponse,
    PageRotation,
    PlacedSignature,
    PreviewPage,
    PreviewResponse,
    RedactionArea,
    ServiceSettings,
)
from .operations import PdfOperations
from .pipeline import PagePipeline, PageRange
from .previews import PreviewMaterializer, preview_filename
from .registry import ArtifactRegistry
from .toolchain import Invoker, PdfToolchain
from .tools import ToolInvoker
from .utils import base_name_without_ext, parse_float_default, parse_int_default, sanitize_filename
from .workspace import Job, RetentionSweeper, WorkspaceManager

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT", bound=BaseModel)

ERROR_STATUS: Dict[Type[PdfToolsError], int] = {
    InputError: 400,
    PathForbiddenError: 403,
    ArtifactNotFoundError: 404,
}


@dataclass
class Services:
    settings: ServiceSettings
    workspaces: WorkspaceManager
    registry: ArtifactRegistry
    toolchain: PdfToolchain
    operations: PdfOperations
    previews: PreviewMaterializer
    gateway: ArtifactGateway
    sweeper: RetentionSweeper


def build_services(settings: ServiceSettings, invoker: Optional[Invoker] = None) -> Services:
    """Wire every component from one resolved configuration."""
    workspaces = WorkspaceManager(settings.storage.root)
    registry = ArtifactRegistry()
    toolchain = PdfToolchain(invoker or ToolInvoker(settings.tools.timeout_seconds), settings.tools)
    pipeline = PagePipeline(toolchain, registry)
    previews = PreviewMaterializer(
        toolchain,
        workspaces,
        registry,
        dpi=settings.preview.dpi,
        wait_timeout=settings.preview.wait_timeout_seconds,
    )
    return Services(
        settings=settings,
        workspaces=workspaces,
        registry=registry,
        toolchain=toolchain,
        operations=PdfOperations(toolchain, pipeline, redaction_dpi=settings.redaction.dpi),
        previews=previews,
        gateway=ArtifactGateway(
            workspaces.root,
            previews,
            download_prefixes=settings.http.download_prefixes,
            preview_prefixes=settings.http.preview_prefixes,
        ),
        sweeper=RetentionSweeper(
            workspaces,
            settings.storage.retention,
            settings.storage.sweep_interval,
            on_removed=registry.forget_jobs,
        ),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def download_url(job: Job, filename: str) -> str:
    return f"/downloads/{job.id}/{filename}"


def preview_url(job_id: str, page: int) -> str:
    return f"/previews/{job_id}/previews/{preview_filename(page)}"


def _parse_items(raw: str, model: Type[ItemT], message: str) -> List[ItemT]:
    """Parse a JSON array form field; malformed input never echoes the parser error."""
    raw = (raw or "").strip()
    if not raw:
        return []
    try:
        return TypeAdapter(List[model]).validate_json(raw)
    except ValidationError as exc:
        logger.info(f"Rejected {model.__name__} payload: {exc.error_count()} error(s)")
        raise InputError(message) from exc


def _page_range(from_page: str, to_page: str) -> PageRange:
    return PageRange(parse_int_default(from_page, 1), parse_int_default(to_page, 0))


def _open_upload_job(services: Services, file: Optional[UploadFile], filename: str = "input.pdf") -> Job:
    """
    Create a job and store the upload in it.

    Raises:
        InputError: If no file was sent or it exceeds the upload limit
        WorkspaceError: If the job or the stored file cannot be written
    """
    if file is None or not file.filename:
        raise InputError("file is required")

    job = services.workspaces.create_job()
    destination = job.path(filename)
    try:
        with destination.open("wb") as buffer:
            shutil.copyfileobj(file.file, buffer, 1024 * 1024)
    except OSError as exc:
        logger.error(f"[{job.id}] failed to store upload: {exc}")
        raise WorkspaceError("failed to save file") from exc
    finally:
        file.file.close()

    limit = services.settings.http.max_upload_mb * 1024 * 1024
    if destination.stat().st_size > limit:
        raise InputError(f"file exceeds {services.settings.http.max_upload_mb} MB")
    logger.info(f"[{job.id}] stored upload {sanitize_filename(file.filename)!r}")
    return job


def _download(job: Job, filename: str) -> DownloadResponse:
    return DownloadResponse(downloadUrl=download_url(job, filename))


router = APIRouter()


@router.post("/page-numbers", response_model=DownloadResponse)
def add_page_numbers(
    file: Optional[UploadFile] = File(None),
    position: str = Form(""),
    fontSize: str = Form(""),
    opacity: str = Form(""),
    startAt: str = Form(""),
    margin: str = Form(""),
    services: Services = Depends(get_services),
) -> DownloadResponse:
    job = _open_upload_job(services, file)
    name = services.operations.page_numbers(
        job,
        file.filename,
        position=position,
        font_size=parse_int_default(fontSize, 10),
        opacity=parse_float_default(opacity, 0.95),
        start_at=parse_int_default(startAt, 1),
        margin=margin,
    )
    return _download(job, name)


@router.post("/watermark", response_model=DownloadResponse)
def add_watermark(
    file: Optional[UploadFile] = File(None),
    text: str = Form(""),
    rotation: str = Form(""),
    opacity: str = Form(""),
    color: str = Form(""),
    layer: str = Form(""),
    fromPage: str = Form(""),
    toPage: str = Form(""),
    services: Services = Depends(get_services),
) -> DownloadResponse:
    if not text.strip():
        raise InputError("text is required")
    job = _open_upload_job(services, file)
    name = services.operations.watermark(
        job,
        file.filename,
        text,
        rotation=parse_int_default(rotation, 45),
        opacity=parse_float_default(opacity, 0.25),
        color=color,
        layer=layer,
        pages=_page_range(fromPage, toPage),
    )
    return _download(job, name)


@router.post("/add-header-footer", response_model=DownloadResponse)
def add_header_footer(
    file: Optional[UploadFile] = File(None),
    headerText: str = Form(""),
    footerText: str = Form(""),
    headerAlign: str = Form(""),
    footerAlign: str = Form(""),
    fontSize: str = Form(""),
    margin: str = Form(""),
    fromPage: str = Form(""),
    toPage: str = Form(""),
    services: Services = Depends(get_services),
) -> DownloadResponse:
    if not headerText.strip() and not footerText.strip():
        raise InputError("header or footer text is required")
    job = _open_upload_job(services, file)
    name = services.operations.header_footer(
        job,
        file.filename,
        header_text=headerText,
        footer_text=footerText,
        header_align=headerAlign,
        footer_align=footerAlign,
        font_size=parse_int_default(fontSize, 12),
        margin=margin,
        pages=_page_range(fromPage, toPage),
    )
    return _download(job, name)


@router.post("/redact", response_model=DownloadResponse)
def redact(
    file: Optional[UploadFile] = File(None),
    redactions: str = Form(""),
    services: Services = Depends(get_services),
) -> DownloadResponse:
    if not redactions.strip():
        raise InputError("redactions JSON required")
    areas = _parse_items(redactions, RedactionArea, "invalid redactions JSON")
    job = _open_upload_job(services, file)
    return _download(job, services.operations.redact(job, file.filename, areas))


@router.post("/sign", response_model=DownloadResponse)
def sign(
    file: Optional[UploadFile] = File(None),
    signatures: str = Form(""),
    services: Services = Depends(get_services),
) -> DownloadResponse:
    placed = _parse_items(signatures, PlacedSignature, "invalid signatures format")
    job = _open_upload_job(services, file)
    return _download(job, services.operations.sign(job, file.filename, placed))


@router.post("/edit", response_model=DownloadResponse)
def edit(
    file: Optional[UploadFile] = File(None),
    annotations: str = Form(""),
    services: Services = Depends(get_services),
) -> DownloadResponse:
    items = _parse_items(annotations, EditAnnotation, "invalid annotations format")
    job = _open_upload_job(services, file)
    return _download(job, services.operations.edit(job, file.filename, items))


@router.post("/add-text", response_model=DownloadResponse)
def add_text(
    file: Optional[UploadFile] = File(None),
    text: str = Form(""),
    page: str = Form(""),
    x: str = Form(""),
    y: str = Form(""),
    fontSize: str = Form(""),
    color: str = Form(""),
    services: Services = Depends(get_services),
) -> DownloadResponse:
    if not text:
        raise InputError("text is required")
    job = _open_upload_job(services, file)
    name = services.operations.add_text(
        job,
        file.filename,
        text,
        page=parse_int_default(page, 1),
        x=parse_int_default(x, 50),
        y=parse_int_default(y, 50),
        font_size=parse_int_default(fontSize, 12),
        color=color.strip() or "#000000",
    )
    return _download(job, name)


@router.post("/organize", response_model=DownloadResponse)
def organize(
    file: Optional[UploadFile] = File(None),
    order: str = Form(""),
    rotations: str = Form(""),
    services: Services = Depends(get_services),
) -> DownloadResponse:
    if not order.strip():
        raise InputError("order is required")
    parsed = _parse_items(rotations, PageRotation, "invalid rotations")
    job = _open_upload_job(services, file)
    return _download(job, services.operations.organize(job, file.filename, order, parsed))


@router.post("/rotate", response_model=DownloadResponse)
def rotate(
    file: Optional[UploadFile] = File(None),
    degrees: str = Form(""),
    services: Services = Depends(get_services),
) -> DownloadResponse:
    angle = parse_int_default(degrees, 90)
    if angle not in (90, 180, 270):
        raise InputError("degrees must be 90, 180, or 270")
    job = _open_upload_job(services, file)
    return _download(job, services.operations.rotate(job, file.filename, angle))


@router.post("/crop", response_model=DownloadResponse)
def crop(
    file: Optional[UploadFile] = File(None),
    marginLeft: str = Form(""),
    marginRight: str = Form(""),
    marginTop: str = Form(""),
    marginBottom: str = Form(""),
    description: str = Form(""),
    unit: str = Form(""),
    services: Services = Depends(get_services),
) -> DownloadResponse:
    job = _open_upload_job(services, file)
    name = services.operations.crop(
        job,
        file.filename,
        margin_left=parse_int_default(marginLeft, 0),
        margin_right=parse_int_default(marginRight, 0),
        margin_top=parse_int_default(marginTop, 0),
        margin_bottom=parse_int_default(marginBottom, 0),
        description=description,
        unit=unit,
    )
    return _download(job, name)


@router.post("/split", response_model=DownloadResponse)
def split(file: Optional[UploadFile] = File(None), services: Services = Depends(get_services)) -> DownloadResponse:
    job = _open_upload_job(services, file)
    return _download(job, services.operations.split(job, file.filename))


@router.post("/html-to-pdf", response_model=DownloadResponse)
def html_to_pdf(
    file: Optional[UploadFile] = File(None),
    html: str = Form(""),
    url: str = Form(""),
    services: Services = Depends(get_services),
) -> DownloadResponse:
    """Convert an uploaded HTML file, inline ``html`` content or a web page ``url``."""
    url = url.strip()
    if url:
        if not url.startswith(("http://", "https://")):
            raise InputError("url must start with http:// or https://")
        job = services.workspaces.create_job()
        return _download(job, services.operations.html_to_pdf(job, url, "webpage"))

    if html:
        job = services.workspaces.create_job()
        source = job.path("input.html")
        try:
            source.write_text(html, encoding="utf-8")
        except OSError as exc:
            raise WorkspaceError("failed to save file") from exc
        return _download(job, services.operations.html_to_pdf(job, source.as_uri(), "document"))

    if file is None or not file.filename:
        raise InputError("file, html content, or url required")
    job = _open_upload_job(services, file, filename="input.html")
    base = base_name_without_ext(file.filename)
    return _download(job, services.operations.html_to_pdf(job, job.path("input.html").as_uri(), base))


@router.post("/preview", response_model=PreviewResponse)
def preview(file: Optional[UploadFile] = File(None), services: Services = Depends(get_services)) -> PreviewResponse:
    """Render every page thumbnail before answering, then return their URLs."""
    job = _open_upload_job(services, file)
    try:
        total = services.previews.render_all(job)
    except (ToolFailure, NamingResolutionError) as exc:
        raise OperationFailed("failed to read page count") from exc
    return PreviewResponse(
        pages=[PreviewPage(pageNumber=page, imageUrl=preview_url(job.id, page)) for page in range(1, total + 1)]
    )


artifacts = APIRouter()


@artifacts.get("/downloads/{path:path}")
def serve_download(path: str, request: Request, services: Services = Depends(get_services)) -> FileResponse:
    target = services.gateway.download(request.url.path)
    return FileResponse(target, filename=target.name, content_disposition_type="attachment")


@artifacts.get("/previews/{path:path}")
def serve_preview(path: str, request: Request, services: Services = Depends(get_services)) -> FileResponse:
    try:
        target = services.gateway.preview(request.url.path)
    except (ToolFailure, NamingResolutionError) as exc:
        raise OperationFailed("failed to render preview") from exc
    return FileResponse(target, media_type="image/png")


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


def _handle_core_error(request: Request, exc: Exception) -> JSONResponse:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return _error_response(status_code, str(exc))

    if isinstance(exc, OperationFailed):
        message = exc.public_message
    elif isinstance(exc, WorkspaceError):
        message = str(exc)
    else:
        message = "internal error"
    logger.error(f"{request.method} {request.url.path} failed: {exc!r}", exc_info=exc.__cause__ or exc)
    return _error_response(500, message)


def create_app(settings: Optional[ServiceSettings] = None, invoker: Optional[Invoker] = None) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Resolved configuration; loaded from the defaults and environment when None
        invoker: Replacement for the subprocess runner, used by tests

    Note:
        The retention sweeper runs only while the application lifespan is active.
    """
    settings = settings or load_settings()
    logging.basicConfig(
        level=settings.logging.level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    services = build_services(settings, invoker)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.sweeper.start()
        try:
            yield
        finally:
            services.sweeper.stop()

    app = FastAPI(title="PDF Tools API", version="0.1.0", lifespan=lifespan)
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.http.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(PdfToolsError, _handle_core_error)

    @app.get("/health", response_class=PlainTextResponse)
    def healthcheck() -> str:
        return "ok"

    app.include_router(router, prefix="/api/pdf")
    app.include_router(router, prefix="/pdf")
    app.include_router(artifacts)
    app.include_router(artifacts, prefix="/api/pdf")

    logger.info(f"Serving jobs from {services.workspaces.root}")
    return app


app = create_app()
