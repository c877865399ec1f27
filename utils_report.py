import io
from xml.sax.saxutils import escape

from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Image, HRFlowable, Table, TableStyle
from reportlab.lib.pagesizes import portrait, A4
from reportlab.lib.units import cm
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.colors import black, HexColor
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.cidfonts import UnicodeCIDFont
from PIL import Image as PILImage

from schemas import SIDES
from utils_logger import get_logger

log = get_logger(__name__)

MAX_PREVIEW_HEIGHT = 10 * cm
SIDE_TITLES = {'left': "Left mandibular third molar", 'right': "Right mandibular third molar"}
FINDING_ROWS = (
    ("FDI code", "fdi_code"),
    ("Minimum distance to IAC", "min_distance"),
    ("Contact relationship", "contact_relationship"),
    ("Relative position", "relative_position"),
    ("Risk score", "risk_score"),
    ("Injury probability", "injury_probability"),
)

# Built-in Asian CID fonts; Helvetica has no CJK glyphs.
CID_FONTS = {'CN': 'STSong-Light', 'JP': 'HeiseiMin-W3'}


def report_font(language: str):
    """Returns (regular, bold) font names able to draw the report language."""
    cid_name = CID_FONTS.get(language)
    if cid_name is None:
        return 'Helvetica', 'Helvetica-Bold'
    if cid_name not in pdfmetrics.getRegisteredFontNames():
        pdfmetrics.registerFont(UnicodeCIDFont(cid_name))
    return cid_name, cid_name


def _styles(language='EN'):
    regular, bold = report_font(language)
    styles = getSampleStyleSheet()
    styles['BodyText'].fontName = regular
    styles['BodyText'].fontSize = 9
    styles['BodyText'].leading = 11
    styles['Heading1'].fontName = bold
    styles['Heading1'].fontSize = 14
    styles['Heading1'].leading = 16
    styles['Heading1'].spaceAfter = 6
    styles['Heading2'].fontName = bold
    styles['Heading2'].fontSize = 12
    styles['Heading2'].leading = 14
    styles['Heading2'].spaceAfter = 6
    styles.add(ParagraphStyle(name='Banner', parent=styles['BodyText'],
                              textColor=HexColor('#b45309'), fontName=bold))
    styles.add(ParagraphStyle(name='Badge', parent=styles['BodyText'], fontName=bold))
    return styles


def _preview_flowable(image_bytes, width, styles):
    if not image_bytes:
        return Paragraph("No image available.", styles['BodyText'])
    try:
        with PILImage.open(io.BytesIO(image_bytes)) as pil_img:
            img_w, img_h = pil_img.size
    except OSError as e:
        log.warning(f"Preview image could not be embedded: {e}")
        return Paragraph("Image could not be embedded.", styles['BodyText'])
    aspect = img_h / float(img_w)
    height = min(width * aspect, MAX_PREVIEW_HEIGHT)
    return Image(io.BytesIO(image_bytes), width=height / aspect, height=height)


def _side_flowables(side, finding, language, styles, col_width):
    tier = finding.tier
    flowables = [
        Paragraph(escape(SIDE_TITLES[side]), styles['Heading2']),
        Paragraph(f'<font color="{tier.color}">{escape(tier.warning_label(language))}</font>', styles['Badge']),
        Spacer(1, 0.2 * cm),
    ]
    rows = [[label, getattr(finding, attr)] for label, attr in FINDING_ROWS]
    rows.append(["High-risk signs", ", ".join(finding.high_risk_signs) or "None"])
    table = Table(rows, colWidths=[col_width * 0.35, col_width * 0.65])
    table.setStyle(TableStyle([
        ('FONTNAME', (0, 0), (-1, -1), styles['BodyText'].fontName),
        ('FONTSIZE', (0, 0), (-1, -1), 8),
        ('VALIGN', (0, 0), (-1, -1), 'TOP'),
        ('LINEBELOW', (0, 0), (-1, -1), 0.25, HexColor('#e2e8f0')),
    ]))
    flowables.append(table)
    flowables.append(Spacer(1, 0.3 * cm))
    for paragraph in finding.paragraphs:
        flowables.append(Paragraph(escape(paragraph), styles['BodyText']))
        flowables.append(Spacer(1, 0.15 * cm))
    return flowables


def create_report_pdf(case_name: str, date: str, results, image_bytes=None,
                      language: str = 'EN', is_fallback: bool = False) -> bytes:
    """Builds the case report in memory and returns the PDF bytes."""
    buffer = io.BytesIO()
    page_width, _ = portrait(A4)
    doc = SimpleDocTemplate(buffer, pagesize=portrait(A4),
                            leftMargin=1.5 * cm, rightMargin=1.5 * cm,
                            topMargin=1.5 * cm, bottomMargin=1.5 * cm,
                            title=case_name)
    styles = _styles(language)
    content_width = page_width - 3 * cm
    story = [
        Paragraph("Third Molar / IAC Risk Report", styles['Heading1']),
        Paragraph(f"Case: {escape(case_name)}", styles['BodyText']),
        Paragraph(f"Date: {escape(date)}", styles['BodyText']),
        Spacer(1, 0.3 * cm),
    ]
    if is_fallback:
        story.append(Paragraph(
            "AI analysis was unavailable. The values below are demonstration data, "
            "not an assessment of this radiograph.", styles['Banner']))
        story.append(Spacer(1, 0.3 * cm))

    story.append(_preview_flowable(image_bytes, content_width, styles))
    story.append(Spacer(1, 0.4 * cm))
    story.append(HRFlowable(width="100%", thickness=1, color=black, spaceAfter=1, spaceBefore=1))

    for side in SIDES:
        story.extend(_side_flowables(side, results.side(side), language, styles, content_width))
        story.append(HRFlowable(width="100%", thickness=0.5, color=black, spaceAfter=12))

    doc.build(story)
    return buffer.getvalue()
