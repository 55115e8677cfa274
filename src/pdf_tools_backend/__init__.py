"""
PDF Tools Backend - REST API for document manipulation

This package provides a FastAPI-based web service that runs uploaded
documents through external command-line tools (pdfcpu, poppler, ImageMagick,
qpdf, headless Chromium) and hands back links to the results. It provides:

- Isolated per-request job directories with age-based cleanup
- Page-wise stamping (split, stamp each page once, merge)
- Redaction, signatures and freeform annotations through image overlays
- Page thumbnails rendered up front or on first access
- Download and preview serving confined to the storage root

Key Components:
    - main: FastAPI application, routes and error mapping
    - operations: The individual document operations
    - pipeline: Split / per-page transform / merge orchestration
    - previews: Eager and lazy thumbnail rendering
    - gateway: Path checks for downloads and previews
    - workspace: Job directories and the retention sweeper
    - toolchain: Command lines of the external tools
    - tools: Bounded-time subprocess runner
    - configuration: Config loading and environment overrides

Usage:
    Run the API server with:
        uvicorn pdf_tools_backend.main:app --host 0.0.0.0 --port 8080
"""
