from __future__ import annotations

from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field


class StorageSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    root: Path
    retention_minutes: float = Field(120, gt=0)
    sweep_interval_minutes: float = Field(30, gt=0)

    @property
    def retention(self) -> timedelta:
        return timedelta(minutes=self.retention_minutes)

    @property
    def sweep_interval(self) -> timedelta:
        return timedelta(minutes=self.sweep_interval_minutes)


class ToolSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    timeout_seconds: float = Field(120, gt=0)
    browser_timeout_seconds: float = Field(60, gt=0)
    programs: Dict[str, str] = Field(default_factory=dict)

    def program(self, name: str) -> str:
        return self.programs.get(name, name)


class PreviewSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    dpi: int = Field(110, gt=0)
    wait_timeout_seconds: float = Field(300, gt=0)


class RedactionSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    dpi: int = Field(300, gt=0)


class HttpSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_upload_mb: int = 64
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    download_prefixes: List[str] = Field(default_factory=lambda: ["/api/pdf/downloads/", "/downloads/"])
    preview_prefixes: List[str] = Field(default_factory=lambda: ["/api/pdf/previews/", "/previews/"])


class LoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: str = "INFO"


class ServiceSettings(BaseModel):
    """Resolved configuration, built once at startup and passed to every component."""

    model_config = ConfigDict(frozen=True)

    storage: StorageSettings
    tools: ToolSettings = ToolSettings()
    preview: PreviewSettings = PreviewSettings()
    redaction: RedactionSettings = RedactionSettings()
    http: HttpSettings = HttpSettings()
    logging: LoggingSettings = LoggingSettings()


class ArtifactState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


class DownloadResponse(BaseModel):
    downloadUrl: str


class PreviewPage(BaseModel):
    pageNumber: int
    imageUrl: str


class PreviewResponse(BaseModel):
    pages: List[PreviewPage]


class ErrorResponse(BaseModel):
    error: str


class RedactionArea(BaseModel):
    """Rectangle expressed as fractions (0..1) of the page size."""

    page: int
    x: float
    y: float
    width: float
    height: float


class PlacedSignature(BaseModel):
    """Signature image placed in percent (0..100) of the page size."""

    id: str = ""
    page: int
    x: float
    y: float
    width: float
    height: float
    imageData: str = ""


class DrawingPoint(BaseModel):
    x: float
    y: float


class EditAnnotation(BaseModel):
    id: str = ""
    type: str
    page: int
    x: float = 0
    y: float = 0
    width: float = 0
    height: float = 0
    content: str = ""
    fontSize: int = 0
    color: str = ""
    imageData: str = ""
    drawingPath: List[DrawingPoint] = Field(default_factory=list)


class PageRotation(BaseModel):
    pageNumber: int
    degrees: int

