"""
Rendering of the article: sections, citations, PDF and static HTML.

Each section is a block of preformatted prose, optionally followed by
a source listing, the output it produced, and a figure. The PDF puts
the text on one page and the figure on the next; the HTML page embeds
figures inline as base64 PNGs so it is a single self-contained file.
"""

import base64
import html
import logging
import os
from dataclasses import dataclass

from PIL import Image

logger = logging.getLogger(__name__)

REFERENCES = {
    "rubin1976": dict(
        short="Rubin", year=1976,
        full="Rubin, D. B. (1976). Inference and missing data. "
             "Biometrika, 63(3), 581-592.",
    ),
    "laird1982": dict(
        short="Laird & Ware", year=1982,
        full="Laird, N. M., & Ware, J. H. (1982). Random-effects models "
             "for longitudinal data. Biometrics, 38(4), 963-974.",
    ),
    "cox1972": dict(
        short="Cox", year=1972,
        full="Cox, D. R. (1972). Regression models and life-tables. "
             "Journal of the Royal Statistical Society, Series B, 34(2), "
             "187-220.",
    ),
    "wu1988": dict(
        short="Wu & Carroll", year=1988,
        full="Wu, M. C., & Carroll, R. J. (1988). Estimation and "
             "comparison of changes in the presence of informative right "
             "censoring by modeling the censoring process. Biometrics, "
             "44(1), 175-188.",
    ),
    "little1993": dict(
        short="Little", year=1993,
        full="Little, R. J. A. (1993). Pattern-mixture models for "
             "multivariate incomplete data. Journal of the American "
             "Statistical Association, 88(421), 125-134.",
    ),
    "diggle1994": dict(
        short="Diggle & Kenward", year=1994,
        full="Diggle, P., & Kenward, M. G. (1994). Informative drop-out "
             "in longitudinal data analysis. Applied Statistics, 43(1), "
             "49-93.",
    ),
    "little1995": dict(
        short="Little", year=1995,
        full="Little, R. J. A. (1995). Modeling the drop-out mechanism in "
             "repeated-measures studies. Journal of the American "
             "Statistical Association, 90(431), 1112-1121.",
    ),
    "hedeker1997": dict(
        short="Hedeker & Gibbons", year=1997,
        full="Hedeker, D., & Gibbons, R. D. (1997). Application of "
             "random-effects pattern-mixture models for missing data in "
             "longitudinal studies. Psychological Methods, 2(1), 64-78.",
    ),
    "rizopoulos2012": dict(
        short="Rizopoulos", year=2012,
        full="Rizopoulos, D. (2012). Joint Models for Longitudinal and "
             "Time-to-Event Data: With Applications in R. Chapman & "
             "Hall/CRC.",
    ),
}


def cite(*keys):
    """Parenthetical citation, e.g. cite("little1993") -> "(Little, 1993)"."""
    parts = []
    for key in keys:
        if key not in REFERENCES:
            raise KeyError(f"unknown reference {key!r}")
        ref = REFERENCES[key]
        parts.append(f"{ref['short']}, {ref['year']}")
    return "(" + "; ".join(parts) + ")"


def format_bibliography(keys=None):
    """Reference list sorted by author and year."""
    keys = list(REFERENCES) if keys is None else list(keys)
    for key in keys:
        if key not in REFERENCES:
            raise KeyError(f"unknown reference {key!r}")
    refs = sorted({k: REFERENCES[k] for k in keys}.values(),
                  key=lambda r: (r["full"], r["year"]))
    return [r["full"] for r in refs]


@dataclass
class Section:
    """One article section."""

    title: str
    body: str
    figure: str = None
    source: str = None
    output: str = None


def _escape(text):
    return text.replace('&', '&amp;').replace('<', '&lt;').replace('>', '&gt;')


# -----------------------------------------------------------------------------
# PDF
# -----------------------------------------------------------------------------

def build_pdf(sections, pdf_path, title, subtitle="", intro_lines=(),
              references=None):
    """
    Combine sections into a PDF: text page, then figure page.

    Parameters
    ----------
    sections : list of Section
    pdf_path : str
    title, subtitle : str
    intro_lines : sequence of str
        Cover-page lines; "" inserts vertical space.
    references : list of str or None
        Reference keys for the bibliography page (all if None).
    """
    from reportlab.lib.pagesizes import letter
    from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, PageBreak, Image as RLImage
    from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
    from reportlab.lib.units import inch

    doc = SimpleDocTemplate(pdf_path, pagesize=letter,
                            leftMargin=0.75*inch, rightMargin=0.75*inch,
                            topMargin=0.75*inch, bottomMargin=0.75*inch)

    styles = getSampleStyleSheet()
    code_style = ParagraphStyle(
        'CodeBlock',
        parent=styles['Normal'],
        fontName='Courier',
        fontSize=8.5,
        leading=11,
        spaceAfter=4,
        leftIndent=0,
    )
    source_style = ParagraphStyle(
        'SourceBlock',
        parent=code_style,
        fontSize=7.5,
        leading=9.5,
        leftIndent=12,
        textColor='#2171B5',
    )
    title_style = ParagraphStyle(
        'SectionTitle',
        parent=styles['Heading1'],
        fontName='Helvetica-Bold',
        fontSize=14,
        leading=18,
        spaceAfter=12,
        textColor='#2171B5',
    )
    heading_style = ParagraphStyle(
        'ArticleTitle',
        parent=styles['Title'],
        fontName='Helvetica-Bold',
        fontSize=18,
        leading=22,
        spaceAfter=6,
    )
    subtitle_style = ParagraphStyle(
        'Subtitle',
        parent=styles['Normal'],
        fontName='Helvetica',
        fontSize=10,
        leading=13,
        spaceAfter=20,
        textColor='#555555',
    )

    def add_lines(story, text, style):
        for line in text.strip('\n').split('\n'):
            safe = _escape(line).replace(' ', '&nbsp;')
            if safe.strip() == '':
                story.append(Spacer(1, 6))
            else:
                story.append(Paragraph(safe, style))

    story = [Paragraph(_escape(title), heading_style)]
    if subtitle:
        story.append(Paragraph(_escape(subtitle), subtitle_style))
    story.append(Spacer(1, 12))
    for line in intro_lines:
        if line == "":
            story.append(Spacer(1, 6))
        else:
            story.append(Paragraph(_escape(line), styles['Normal']))
    story.append(PageBreak())

    page_w = letter[0] - 1.5*inch
    max_h = letter[1] - 1.5*inch

    for sec in sections:
        story.append(Paragraph(_escape(sec.title), title_style))
        add_lines(story, sec.body, code_style)
        if sec.source:
            story.append(Spacer(1, 8))
            add_lines(story, sec.source, source_style)
        if sec.output:
            story.append(Spacer(1, 8))
            add_lines(story, sec.output, code_style)
        story.append(PageBreak())

        if sec.figure and not os.path.exists(sec.figure):
            logger.warning("figure not found, skipped: %s", sec.figure)
        elif sec.figure:
            # Scale to the usable page width, capped by page height
            iw, ih = Image.open(sec.figure).size
            aspect = ih / iw
            display_w = page_w
            display_h = display_w * aspect
            if display_h > max_h:
                display_h = max_h
                display_w = display_h / aspect
            story.append(RLImage(sec.figure, width=display_w, height=display_h))
            story.append(PageBreak())

    story.append(Paragraph("References", title_style))
    for ref in format_bibliography(references):
        story.append(Paragraph(_escape(ref), styles['Normal']))
        story.append(Spacer(1, 4))

    doc.build(story)
    logger.info("PDF written to %s", pdf_path)
    return pdf_path


# -----------------------------------------------------------------------------
# HTML
# -----------------------------------------------------------------------------

HTML_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>{title}</title>
<style>
body {{ max-width: 52em; margin: 2em auto; font-family: Georgia, serif;
       color: #222; background: #FAFAFA; line-height: 1.5; }}
h1 {{ font-family: Helvetica, sans-serif; }}
h2 {{ font-family: Helvetica, sans-serif; color: #2171B5; }}
pre {{ background: #F0F0F0; padding: .6em; overflow-x: auto; }}
pre.source {{ border-left: 3px solid #2171B5; }}
pre.output {{ border-left: 3px solid #E6550D; }}
img {{ max-width: 100%; }}
.subtitle {{ color: #555; }}
</style>
</head>
<body>
<h1>{title}</h1>
<p class="subtitle">{subtitle}</p>
{body}
<h2>References</h2>
<ol>
{references}
</ol>
</body>
</html>
"""


def default_block(kind, text):
    """Default rendering of a source or output block."""
    return f'<pre class="{kind}"><code>{html.escape(text.strip())}</code></pre>'


def _prose_to_html(text):
    """Blank-line separated paragraphs; indented paragraphs stay preformatted."""
    parts = []
    for para in text.strip().split("\n\n"):
        if not para.strip():
            continue
        if all(line.startswith("  ") for line in para.splitlines() if line):
            parts.append(f"<pre>{html.escape(para)}</pre>")
        else:
            parts.append(f"<p>{html.escape(' '.join(para.split()))}</p>")
    return "\n".join(parts)


def embed_image(path):
    """PNG file as a data URI."""
    with open(path, "rb") as fh:
        data = base64.b64encode(fh.read()).decode("ascii")
    return f"data:image/png;base64,{data}"


def build_html(sections, html_path, title, subtitle="",
               block_hook=None,
               references=None):
    """
    Render the article as a self-contained static web page.

    Parameters
    ----------
    sections : list of Section
    html_path : str
    title, subtitle : str
    block_hook : callable or None
        hook(kind, text) -> HTML for "source" and "output" blocks;
        defaults to a <pre> block with a class named after `kind`.
    references : list of str or None
        Reference keys for the bibliography (all if None).
    """
    hook = block_hook or default_block
    body = []
    for sec in sections:
        body.append(f"<h2>{html.escape(sec.title)}</h2>")
        body.append(_prose_to_html(sec.body))
        if sec.source:
            body.append(hook("source", sec.source))
        if sec.output:
            body.append(hook("output", sec.output))
        if sec.figure and not os.path.exists(sec.figure):
            logger.warning("figure not found, skipped: %s", sec.figure)
        elif sec.figure:
            name = os.path.basename(sec.figure)
            body.append(f'<figure><img src="{embed_image(sec.figure)}" '
                        f'alt="{html.escape(name)}"></figure>')

    refs = "\n".join(f"<li>{html.escape(r)}</li>"
                     for r in format_bibliography(references))
    page = HTML_TEMPLATE.format(title=html.escape(title),
                                subtitle=html.escape(subtitle),
                                body="\n".join(body), references=refs)
    with open(html_path, "w", encoding="utf-8") as fh:
        fh.write(page)
    logger.info("HTML written to %s", html_path)
    return html_path
