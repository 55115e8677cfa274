"""
Tests for the document operations, run against the fake toolchain.
"""

import base64
import zipfile

import pytest

from conftest import read_pages
from pdf_tools_backend.errors import InputError, OperationFailed, ToolFailure
from pdf_tools_backend.models import EditAnnotation, PageRotation, PlacedSignature, RedactionArea
from pdf_tools_backend.operations import crop_box, decode_data_url
from pdf_tools_backend.pipeline import PageRange

PNG_DATA_URL = "data:image/png;base64," + base64.b64encode(b"\x89PNG fake image").decode()


@pytest.fixture
def operations(services):
    return services.operations


def _descriptors(invoker, command="stamp"):
    return [args[args.index("--") + 2] for args in invoker.calls_to("pdfcpu", command)]


class TestPageNumbers:
    def test_three_pages_from_five(self, operations, invoker, new_job):
        job = new_job(3)
        name = operations.page_numbers(job, "report.pdf", position="bc", start_at=5)

        assert name == "report_numbered.pdf"
        assert read_pages(job.path(name)) == ["page 1 [stamp:5]", "page 2 [stamp:6]", "page 3 [stamp:7]"]
        assert len(list(job.pages_dir.iterdir())) == 3
        assert _descriptors(invoker)[0] == (
            "pos:bc, off:0 20, points:10, scale:1 abs, rot:0, op:0.95, fillc:0.15 0.15 0.15"
        )

    def test_top_positions_offset_downwards_and_values_are_clamped(self, operations, invoker, new_job):
        job = new_job(1)
        operations.page_numbers(job, "a.pdf", position="tr", font_size=200, opacity=3, start_at=-4, margin="large")

        assert _descriptors(invoker)[0].startswith("pos:tr, off:0 -40, points:72,")
        assert "op:1.00" in _descriptors(invoker)[0]
        assert read_pages(job.path("a_numbered.pdf")) == ["page 1 [stamp:1]"]

    def test_tool_failure_becomes_operation_failure(self, operations, invoker, new_job):
        job = new_job(2)
        invoker.fail_when(lambda name, args: name == "pdfcpu" and args[0] == "merge")
        with pytest.raises(OperationFailed) as info:
            operations.page_numbers(job, "a.pdf")
        assert info.value.public_message == "failed to add page numbers"
        assert isinstance(info.value.__cause__, ToolFailure)


class TestWatermark:
    def test_watermark_behind_selected_pages(self, operations, invoker, new_job):
        job = new_job(4)
        name = operations.watermark(job, "a.pdf", "DRAFT", pages=PageRange(2, 3))

        assert read_pages(job.path(name)) == [
            "page 1",
            "page 2 [watermark:DRAFT]",
            "page 3 [watermark:DRAFT]",
            "page 4",
        ]
        assert _descriptors(invoker, "watermark")[0] == (
            "pos:c, off:0 0, points:48, scale:1 abs, rot:-45, op:0.25, fillc:0.50 0.50 0.50"
        )

    def test_over_layer_stamps_with_color(self, operations, invoker, new_job):
        job = new_job(1)
        operations.watermark(job, "a.pdf", "TOP", rotation=30, color="#ff0000", layer="over")
        assert _descriptors(invoker)[0].endswith("rot:-30, op:0.25, fillc:1.00 0.00 0.00")

    def test_text_is_required(self, operations, new_job):
        with pytest.raises(InputError):
            operations.watermark(new_job(1), "a.pdf", "   ")

    def test_inverted_range_is_rejected(self, operations, new_job):
        with pytest.raises(InputError):
            operations.watermark(new_job(5), "a.pdf", "X", pages=PageRange(4, 2))


class TestHeaderFooter:
    def test_header_and_footer(self, operations, invoker, new_job):
        job = new_job(2)
        name = operations.header_footer(job, "a.pdf", header_text="Head", footer_text="Foot", header_align="left")

        assert read_pages(job.path(name)) == [
            "page 1 [stamp:Head] [stamp:Foot]",
            "page 2 [stamp:Head] [stamp:Foot]",
        ]
        descriptors = _descriptors(invoker)
        assert descriptors[0] == "pos:tl, off:0 -25, points:12, scale:1 abs, rot:0, op:1.00, fillc:0.10 0.10 0.10"
        assert descriptors[1].startswith("pos:bc, off:0 25,")

    def test_footer_only_on_range(self, operations, new_job):
        job = new_job(3)
        name = operations.header_footer(
            job, "a.pdf", footer_text="Foot", footer_align="right", margin="small", pages=PageRange(3, 0)
        )
        assert read_pages(job.path(name)) == ["page 1", "page 2", "page 3 [stamp:Foot]"]

    def test_requires_text(self, operations, new_job):
        with pytest.raises(InputError):
            operations.header_footer(new_job(1), "a.pdf")


class TestRedact:
    def test_rasterizes_only_pages_with_areas(self, operations, invoker, new_job):
        job = new_job(3)
        areas = [
            RedactionArea(page=2, x=0.1, y=0.1, width=0.5, height=0.2),
            RedactionArea(page=2, x=0.6, y=0.8, width=0.9, height=0.9),
        ]
        name = operations.redact(job, "contract.pdf", areas)

        assert name == "contract_redacted.pdf"
        assert read_pages(job.path(name)) == ["page 1", "png of page 2 [redacted:2]", "page 3"]
        draw = invoker.calls_to("convert")[0]
        assert "rectangle 255,330 1530,990" in draw
        assert "rectangle 1530,2640 2550,3300" in draw
        assert invoker.calls_to("pdftoppm")[0][2] == "300"
        assert len(invoker.calls_to("qpdf")) == 1

    def test_unreadable_image_size_reports_command(self, services, invoker, monkeypatch, tmp_path):
        monkeypatch.setattr(invoker, "_identify", lambda argv: "no size here")
        image = tmp_path / "page-1.png"
        with pytest.raises(ToolFailure) as info:
            services.toolchain.image_size(tmp_path, image)
        assert info.value.command == ["identify", "-format", "%w %h", str(image)]
        assert invoker.calls_to("identify") == [("-format", "%w %h", str(image))]
        assert info.value.reason == "reported no image size"

    def test_requires_areas(self, operations, new_job):
        with pytest.raises(InputError):
            operations.redact(new_job(1), "a.pdf", [])


class TestOverlays:
    def test_sign_places_images_in_points(self, operations, invoker, new_job):
        job = new_job(2)
        signature = PlacedSignature(id="s1", page=2, x=50, y=25, width=10, height=5, imageData=PNG_DATA_URL)

        name = operations.sign(job, "a.pdf", [signature])

        assert read_pages(job.path(name)) == ["page 1", "page 2 [stamp-image:overlay_2.png]"]
        compose = invoker.calls_to("convert")[0]
        assert compose[:3] == ("-size", "612x792", "xc:none")
        assert "61x39!" in compose
        assert "+306+198" in compose
        assert _descriptors(invoker)[0] == "pos:tl, off:0 0, scale:1 abs, rot:0"
        assert (job.path("overlays") / "sig_p2_0.png").read_bytes() == b"\x89PNG fake image"

    def test_sign_ignores_entries_without_image(self, operations, new_job):
        with pytest.raises(InputError):
            operations.sign(new_job(1), "a.pdf", [PlacedSignature(page=1, x=0, y=0, width=1, height=1)])

    def test_edit_layers(self, operations, invoker, new_job):
        job = new_job(1)
        annotations = [
            EditAnnotation(type="text", page=1, x=10, y=10, content="It's here", fontSize=4),
            EditAnnotation(type="drawing", page=1, color="#FFFF00", drawingPath=[{"x": 0, "y": 0}, {"x": 50, "y": 50}]),
            EditAnnotation(type="drawing", page=1, drawingPath=[{"x": 1, "y": 1}]),
            EditAnnotation(type="image", page=1, x=0, y=0, imageData=PNG_DATA_URL),
        ]

        name = operations.edit(job, "a.pdf", annotations)

        assert read_pages(job.path(name)) == ["page 1 [stamp-image:overlay_1.png]"]
        compose = invoker.calls_to("convert")[0]
        assert "text 61,95 'It\\'s here'" in compose
        assert "16" in compose
        assert "#FFFF0080" in compose and "12" in compose
        assert "polyline 0.0,0.0 306.0,396.0" in compose
        assert "183x237!" in compose

    def test_edit_without_content_is_rejected(self, operations, new_job):
        with pytest.raises(InputError):
            operations.edit(new_job(1), "a.pdf", [EditAnnotation(type="text", page=1)])

    def test_unreadable_image_keeps_page(self, operations, invoker, new_job):
        job = new_job(1)
        broken = EditAnnotation(type="image", page=1, imageData="data:image/png;base64,!!!")
        name = operations.edit(job, "a.pdf", [broken])
        assert read_pages(job.path(name)) == ["page 1"]
        assert invoker.calls_to("convert") == []

    def test_add_text_targets_one_page(self, operations, invoker, new_job):
        job = new_job(3)
        name = operations.add_text(job, "a.pdf", "Hello", page=9, x=20, y=30)

        assert name == "a_annotated.pdf"
        assert read_pages(job.path(name)) == ["page 1", "page 2", "page 3 [stamp-image:overlay_3.png]"]
        assert "text 20,42 'Hello'" in invoker.calls_to("convert")[0]


class TestStructure:
    def test_organize_rotates_then_collects(self, operations, invoker, new_job):
        job = new_job(3)
        rotations = [PageRotation(pageNumber=1, degrees=90), PageRotation(pageNumber=2, degrees=0)]

        name = operations.organize(job, "a.pdf", "3,1", rotations)

        assert read_pages(job.path(name)) == ["page 3", "page 1 [rot:90]"]
        assert len(invoker.calls_to("pdfcpu", "rotate")) == 1
        assert read_pages(job.input_path) == ["page 1", "page 2", "page 3"]

    def test_organize_requires_order(self, operations, new_job):
        with pytest.raises(InputError):
            operations.organize(new_job(1), "a.pdf", " ")

    def test_rotate(self, operations, invoker, new_job):
        job = new_job(2)
        name = operations.rotate(job, "a.pdf", 180)
        assert read_pages(job.path(name)) == ["page 1 [rot:180]", "page 2 [rot:180]"]

    @pytest.mark.parametrize("degrees", [0, 45, 360, -90])
    def test_rotate_rejects_other_angles(self, operations, new_job, degrees):
        with pytest.raises(InputError):
            operations.rotate(new_job(1), "a.pdf", degrees)

    def test_crop(self, operations, invoker, new_job):
        job = new_job(1)
        name = operations.crop(job, "a.pdf", margin_left=5, margin_bottom=15)
        assert read_pages(job.path(name)) == ["page 1 [crop:5 15 0 0]"]
        assert invoker.calls_to("pdfcpu", "crop")[0][:3] == ("crop", "-u", "po")

    @pytest.mark.parametrize(
        "margins, description, expected",
        [((0, 0, 0, 0), "", "10 10 10 10"), ((0, 0, 0, 0), "[0 0 200 200]", "[0 0 200 200]"), ((1, 2, 3, 4), "x", "1 4 2 3")],
    )
    def test_crop_box(self, margins, description, expected):
        assert crop_box(*margins, description) == expected

    def test_split_zips_single_pages(self, operations, new_job):
        job = new_job(3)
        name = operations.split(job, "Book.pdf")

        assert name == "Book_split_pages.zip"
        with zipfile.ZipFile(job.path(name)) as archive:
            assert sorted(archive.namelist()) == ["page_1.pdf", "page_2.pdf", "page_3.pdf"]
            assert archive.read("page_2.pdf") == b"page 2\n"


class TestConversion:
    def test_html_to_pdf(self, operations, invoker, services):
        job = services.workspaces.create_job()
        source = job.path("input.html")
        source.write_text("<h1>hi</h1>")

        name = operations.html_to_pdf(job, source.as_uri(), "page")

        assert name == "page.pdf"
        assert job.path(name).is_file()
        args = invoker.calls_to("chromium")[0]
        assert "--headless" in args and args[-1] == source.as_uri()

    def test_missing_browser_output_fails(self, operations, invoker, services):
        job = services.workspaces.create_job()
        invoker.fail_when(lambda name, args: name == "chromium")
        with pytest.raises(OperationFailed) as info:
            operations.html_to_pdf(job, "https://example.com", "webpage")
        assert info.value.public_message == "HTML to PDF conversion failed"


def test_decode_data_url():
    assert decode_data_url(PNG_DATA_URL) == b"\x89PNG fake image"
    assert decode_data_url("https://example.com/a.png") is None
    assert decode_data_url("data:image/png;base64") is None
