"""Tests for citations and the PDF / HTML renderers."""

import base64

import matplotlib.pyplot as plt
import pytest

from mnar.report import (
    REFERENCES,
    Section,
    build_html,
    build_pdf,
    cite,
    default_block,
    embed_image,
    format_bibliography,
)


@pytest.fixture
def figure_path(tmp_path):
    fig, ax = plt.subplots(figsize=(3, 2))
    ax.plot([0, 1], [0, 1])
    path = tmp_path / "fig.png"
    fig.savefig(path)
    plt.close(fig)
    return str(path)


@pytest.fixture
def sections(figure_path):
    return [
        Section("1. Intro", "First paragraph.\n\n  y = a + b * x\n"),
        Section("2. Results", "Estimates below.", figure=figure_path,
                source="def f():\n    return 1 < 2\n", output="a  b\n1  2"),
    ]


class TestCitations:
    """Tests for cite and format_bibliography."""

    def test_single_and_multiple(self):
        assert cite("rubin1976") == "(Rubin, 1976)"
        assert cite("little1993", "hedeker1997") == \
            "(Little, 1993; Hedeker & Gibbons, 1997)"

    def test_unknown_key_raises(self):
        with pytest.raises(KeyError):
            cite("smith2020")
        with pytest.raises(KeyError):
            format_bibliography(["rubin1976", "smith2020"])

    def test_bibliography_sorted(self):
        refs = format_bibliography()

        assert len(refs) == len(REFERENCES)
        assert refs == sorted(refs)
        assert format_bibliography(["rubin1976"]) == [REFERENCES["rubin1976"]["full"]]


class TestHTML:
    """Tests for build_html."""

    def test_embeds_figures_and_escapes(self, tmp_path, sections, figure_path):
        path = build_html(sections, str(tmp_path / "out.html"), "Title <1>",
                          "Sub", references=["rubin1976"])
        page = open(path, encoding="utf-8").read()

        assert "<h1>Title &lt;1&gt;</h1>" in page
        assert embed_image(figure_path) in page
        assert "return 1 &lt; 2" in page
        assert '<pre class="output">' in page
        assert "<pre>  y = a + b * x</pre>" in page
        assert "<p>First paragraph.</p>" in page
        assert REFERENCES["rubin1976"]["full"] in page
        assert REFERENCES["cox1972"]["full"] not in page

    def test_block_hook(self, tmp_path, sections):
        seen = []

        def hook(kind, text):
            seen.append(kind)
            return f"<div class='{kind}-block'>{len(text)}</div>"

        page = open(build_html(sections, str(tmp_path / "hook.html"), "T",
                               block_hook=hook), encoding="utf-8").read()

        assert seen == ["source", "output"]
        assert "<div class='source-block'>" in page
        assert '<pre class="source">' not in page

    def test_embed_image_is_base64_png(self, figure_path):
        uri = embed_image(figure_path)

        assert uri.startswith("data:image/png;base64,")
        raw = base64.b64decode(uri.split(",", 1)[1])
        assert raw[:8] == b"\x89PNG\r\n\x1a\n"

    def test_default_block(self):
        assert default_block("output", "  x < y \n") == \
            '<pre class="output"><code>x &lt; y</code></pre>'

    def test_missing_figure_is_skipped(self, tmp_path):
        secs = [Section("Only", "Text", figure=str(tmp_path / "nope.png"))]
        path = build_html(secs, str(tmp_path / "skip.html"), "Title")
        page = open(path, encoding="utf-8").read()

        assert "<h2>Only</h2>" in page
        assert "<figure>" not in page


class TestPDF:
    """Tests for build_pdf."""

    def test_writes_pdf(self, tmp_path, sections):
        pytest.importorskip("reportlab")
        path = build_pdf(sections, str(tmp_path / "out.pdf"), "Title", "Sub",
                         intro_lines=["line one", "", "line two"],
                         references=["rubin1976", "cox1972"])

        with open(path, "rb") as fh:
            assert fh.read(5) == b"%PDF-"

    def test_missing_figure_is_skipped(self, tmp_path):
        pytest.importorskip("reportlab")
        secs = [Section("Only", "Text", figure=str(tmp_path / "nope.png"))]
        path = build_pdf(secs, str(tmp_path / "skip.pdf"), "Title")

        assert (tmp_path / "skip.pdf").exists()
        assert path == str(tmp_path / "skip.pdf")
