"""
Pytest configuration and fixtures for PDF Tools Backend tests.

External tools are replaced by ``FakeInvoker``. It understands the command
lines built by ``PdfToolchain`` and works on text "documents": one line per
page, so a test can read a produced file and see which page went where and
which stamps were applied to it.
"""

import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
os.environ["PDF_WORK_DIR"] = tempfile.mkdtemp(prefix="pdf_tools_test_work_")
os.environ.setdefault("PDF_LOG_LEVEL", "DEBUG")

from pdf_tools_backend.configuration import load_settings
from pdf_tools_backend.errors import ToolFailure
from pdf_tools_backend.main import build_services, create_app

Call = Tuple[str, Tuple[str, ...]]


def write_document(path: Path, pages: int, label: str = "page") -> Path:
    path.write_text("".join(f"{label} {i}\n" for i in range(1, pages + 1)))
    return path


def read_pages(path: Path) -> List[str]:
    return path.read_text().splitlines()


def parse_page_list(ranges: str) -> List[int]:
    """Expand a pdfcpu page selection such as ``"3,1-2"``; malformed parts are skipped."""
    pages: List[int] = []
    for part in (part.strip() for part in ranges.split(",")):
        start, sep, end = part.partition("-")
        try:
            pages.extend(range(int(start), int(end) + 1) if sep else [int(part)])
        except ValueError:
            continue
    return pages


class FakeInvoker:
    """
    Stand-in for ``ToolInvoker`` that simulates pdfcpu, poppler, ImageMagick,
    qpdf and Chromium on text documents.

    Attributes:
        calls: Every invocation as ``(program, args)``
        failures: Predicates; a call matching any of them raises ``ToolFailure``
        hooks: Callables run before a program's simulation, keyed by program name
    """

    def __init__(self) -> None:
        self.calls: List[Call] = []
        self.failures: List[Callable[[str, Tuple[str, ...]], bool]] = []
        self.hooks: Dict[str, Callable[[Tuple[str, ...]], None]] = {}
        self._lock = threading.Lock()

    def fail_when(self, predicate: Callable[[str, Tuple[str, ...]], bool]) -> None:
        self.failures.append(predicate)

    def calls_to(self, program: str, first_arg: Optional[str] = None) -> List[Tuple[str, ...]]:
        with self._lock:
            return [
                args
                for name, args in self.calls
                if name == program and (first_arg is None or (args and args[0] == first_arg))
            ]

    def run(self, work_dir, program, *args, timeout=None) -> str:
        name = Path(program).name
        argv = tuple(str(arg) for arg in args)
        with self._lock:
            self.calls.append((name, argv))
        if name in self.hooks:
            self.hooks[name](argv)
        if any(predicate(name, argv) for predicate in self.failures):
            raise ToolFailure([program, *argv], "simulated failure", returncode=1)

        handler = getattr(self, f"_{name}", None)
        if handler is None:
            raise ToolFailure([program, *argv], "", reason="could not be started")
        try:
            return handler(argv) or ""
        except (OSError, IndexError, ValueError) as exc:
            raise ToolFailure([program, *argv], str(exc), returncode=1) from exc

    # -- pdfcpu -------------------------------------------------------------------

    def _pdfcpu(self, argv: Tuple[str, ...]) -> str:
        command = argv[0]
        if command == "info":
            return f"Pages: {len(read_pages(Path(argv[1])))}\n"
        if command == "extract":
            source, out_dir = Path(argv[3]), Path(argv[4])
            for index, line in enumerate(read_pages(source), start=1):
                (out_dir / f"{source.stem}_page_{index}.pdf").write_text(line + "\n")
            return ""
        if command in ("stamp", "watermark"):
            return self._stamp(command, argv)
        if command == "merge":
            output, sources = Path(argv[1]), argv[2:]
            lines: List[str] = []
            for source in sources:
                lines.extend(read_pages(Path(source)))
            output.write_text("".join(line + "\n" for line in lines))
            return ""
        if command == "rotate":
            return self._rotate(argv)
        if command == "collect":
            order, source, output = argv[2], Path(argv[3]), Path(argv[4])
            pages = read_pages(source)
            output.write_text("".join(pages[page - 1] + "\n" for page in parse_page_list(order)))
            return ""
        if command == "crop":
            box, source, output = argv[4], Path(argv[5]), Path(argv[6])
            output.write_text("".join(f"{line} [crop:{box}]\n" for line in read_pages(source)))
            return ""
        raise ValueError(f"unsupported pdfcpu command {command}")

    def _stamp(self, command: str, argv: Tuple[str, ...]) -> str:
        selected = None
        if "-pages" in argv:
            selected = set(parse_page_list(argv[argv.index("-pages") + 1]))
        content, _descriptor, source, output = argv[argv.index("--") + 1 :]
        mode = argv[argv.index("-mode") + 1]
        marker = f"[{command}:{content}]" if mode == "text" else f"[{command}-image:{Path(content).name}]"
        lines = [
            f"{line} {marker}" if selected is None or index in selected else line
            for index, line in enumerate(read_pages(Path(source)), start=1)
        ]
        Path(output).write_text("".join(line + "\n" for line in lines))
        return ""

    def _rotate(self, argv: Tuple[str, ...]) -> str:
        if argv[1] == "-pages":
            selected = set(parse_page_list(argv[2]))
            source, degrees, output = Path(argv[3]), argv[4].lstrip("-"), Path(argv[3])
        else:
            selected = None
            source, degrees = Path(argv[1]), argv[2]
            output = Path(argv[3]) if len(argv) > 3 else source
        lines = [
            f"{line} [rot:{degrees}]" if selected is None or index in selected else line
            for index, line in enumerate(read_pages(source), start=1)
        ]
        output.write_text("".join(line + "\n" for line in lines))
        return ""

    # -- poppler --------------------------------------------------------------------

    def _pdfinfo(self, argv: Tuple[str, ...]) -> str:
        pages = read_pages(Path(argv[0]))
        return f"Pages:          {len(pages)}\nPage size:      612 x 792 pts (letter)\n"

    def _pdftoppm(self, argv: Tuple[str, ...]) -> str:
        first = int(argv[argv.index("-f") + 1]) if "-f" in argv else None
        last = int(argv[argv.index("-l") + 1]) if "-l" in argv else None
        source, prefix = Path(argv[-2]), argv[-1]
        pages = read_pages(source)
        width = len(str(len(pages)))
        for index in range(first or 1, (last or len(pages)) + 1):
            Path(f"{prefix}-{index:0{width}d}.png").write_text(f"png of {pages[index - 1]}\n")
        return ""

    # -- imagemagick / qpdf / chromium ----------------------------------------------

    def _identify(self, argv: Tuple[str, ...]) -> str:
        Path(argv[-1]).stat()
        return "2550 3300"

    def _convert(self, argv: Tuple[str, ...]) -> str:
        output = Path(argv[-1].removeprefix("PNG32:"))
        if argv[0] == "-size":
            output.write_text(f"overlay {argv[1]}\n")
        elif output.suffix == ".pdf":
            lines = [Path(image).read_text().strip() for image in argv[:-1]]
            output.write_text("".join(line + "\n" for line in lines))
        else:
            rectangles = argv.count("-draw")
            output.write_text(f"{Path(argv[0]).read_text().strip()} [redacted:{rectangles}]\n")
        return ""

    def _qpdf(self, argv: Tuple[str, ...]) -> str:
        shutil.copyfile(argv[-2], argv[-1])
        return ""

    def _chromium(self, argv: Tuple[str, ...]) -> str:
        output = next(arg for arg in argv if arg.startswith("--print-to-pdf=")).split("=", 1)[1]
        Path(output).write_text(f"printed {argv[-1]}\n")
        return ""


@pytest.fixture
def work_root(tmp_path):
    return tmp_path / "work"


@pytest.fixture
def settings(work_root):
    return load_settings(overrides={"storage": {"root": str(work_root)}})


@pytest.fixture
def invoker():
    return FakeInvoker()


@pytest.fixture
def services(settings, invoker):
    return build_services(settings, invoker)


@pytest.fixture
def client(settings, invoker):
    """Create a test client for an app wired to the fake invoker."""
    with TestClient(create_app(settings, invoker)) as test_client:
        yield test_client


@pytest.fixture
def new_job(services):
    """Create a job whose input.pdf has the requested number of pages."""

    def factory(pages: int = 3):
        job = services.workspaces.create_job()
        write_document(job.input_path, pages)
        return job

    return factory


@pytest.fixture
def upload():
    """Build the multipart ``files`` argument for a simulated document."""

    def factory(pages: int = 3, filename: str = "report.pdf"):
        content = "".join(f"page {i}\n" for i in range(1, pages + 1)).encode()
        return {"file": (filename, content, "application/pdf")}

    return factory
