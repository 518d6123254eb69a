"""
PDF export of a project's research examples
Uses ReportLab to lay out a cover page, import summary and one card per example
"""


from io import BytesIO
from datetime import datetime
from xml.sax.saxutils import escape

from reportlab.lib.pagesizes import letter
from reportlab.lib.units import inch
from reportlab.lib import colors
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.enums import TA_CENTER, TA_LEFT
from reportlab.platypus import (
    SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle,
    PageBreak, KeepTogether, HRFlowable
)
from reportlab.graphics.shapes import Drawing, Rect
from reportlab.graphics.charts.barcharts import HorizontalBarChart
from reportlab.pdfgen import canvas


# ===== COLOR SCHEME =====
COLORS = {
    'primary':    colors.HexColor('#1e3a8a'),   # headers, key elements
    'secondary':  colors.HexColor('#0c1d4a'),   # cover band
    'accent':     colors.HexColor('#d97706'),   # dividers
    'navy_lt':    colors.HexColor('#eff6ff'),
    'navy_mid':   colors.HexColor('#dbeafe'),
    'background': colors.HexColor('#f8fafc'),
    'text_dark':  colors.HexColor('#0f172a'),
    'text_light': colors.HexColor('#64748b'),
    'border':     colors.HexColor('#e2e8f0'),
    'white':      colors.HexColor('#ffffff'),
}

EXAMPLE_FIELDS = (
    ('entry_point', 'Entry point'),
    ('actions', 'Actions'),
    ('error', 'Error'),
    ('outcome', 'Outcome'),
)

MAX_FIELD_CHARS = 1200


def _text(value, limit=MAX_FIELD_CHARS):
    """Escape a user-supplied value for a Paragraph and clip very long text."""
    text = ' '.join(str(value or '').split())
    if len(text) > limit:
        text = text[:limit].rstrip() + '...'
    return escape(text)


def get_custom_styles():
    """Create custom paragraph styles for the export"""
    styles = getSampleStyleSheet()

    styles.add(ParagraphStyle(
        name='CoverTitle',
        parent=styles['Heading1'],
        fontName='Helvetica-Bold',
        fontSize=28,
        textColor=COLORS['white'],
        alignment=TA_CENTER,
        spaceAfter=16,
        leading=34
    ))

    styles.add(ParagraphStyle(
        name='CoverSubtitle',
        parent=styles['Normal'],
        fontName='Helvetica',
        fontSize=15,
        textColor=COLORS['navy_mid'],
        alignment=TA_CENTER,
        spaceAfter=10,
        leading=20
    ))

    styles.add(ParagraphStyle(
        name='SectionHeading',
        parent=styles['Heading1'],
        fontName='Helvetica-Bold',
        fontSize=18,
        textColor=COLORS['primary'],
        spaceBefore=12,
        spaceAfter=14,
        leading=22,
    ))

    styles.add(ParagraphStyle(
        name='ExportBodyText',
        parent=styles['Normal'],
        fontName='Times-Roman',
        fontSize=11,
        textColor=COLORS['text_dark'],
        leading=16,
        spaceAfter=12
    ))

    styles.add(ParagraphStyle(
        name='ExampleTitle',
        parent=styles['Heading2'],
        fontName='Helvetica-Bold',
        fontSize=11,
        textColor=COLORS['secondary'],
        leading=15,
        spaceAfter=4,
    ))

    styles.add(ParagraphStyle(
        name='FieldLabel',
        parent=styles['Normal'],
        fontName='Helvetica-Bold',
        fontSize=8,
        textColor=COLORS['text_light'],
        leading=11,
    ))

    styles.add(ParagraphStyle(
        name='FieldValue',
        parent=styles['Normal'],
        fontName='Times-Roman',
        fontSize=9.5,
        textColor=COLORS['text_dark'],
        leading=13,
        alignment=TA_LEFT,
    ))

    styles.add(ParagraphStyle(
        name='Caption',
        parent=styles['Normal'],
        fontName='Helvetica',
        fontSize=9,
        textColor=COLORS['text_light'],
        alignment=TA_LEFT,
        leading=12
    ))

    return styles


# ===== FOOTER HANDLER =====


class ExportCanvas(canvas.Canvas):
    """Custom canvas for adding headers and page-numbered footers"""

    def __init__(self, *args, **kwargs):
        self.workspace_name = kwargs.pop('workspace_name', '')
        self.export_date = kwargs.pop('export_date', '')
        canvas.Canvas.__init__(self, *args, **kwargs)
        self._saved_page_states = []

    def showPage(self):
        self._saved_page_states.append(dict(self.__dict__))
        self._startPage()

    def save(self):
        num_pages = len(self._saved_page_states)
        for state in self._saved_page_states:
            self.__dict__.update(state)
            self.draw_page_decorations(num_pages)
            canvas.Canvas.showPage(self)
        canvas.Canvas.save(self)

    def draw_page_decorations(self, num_pages):
        page_num = self._pageNumber
        page_width, page_height = letter

        # Header bar, skipped on the cover
        if page_num > 1:
            self.setFillColor(COLORS['primary'])
            self.rect(0, page_height - 0.4*inch, page_width, 0.4*inch, stroke=0, fill=1)
            self.setFont('Helvetica-Bold', 8)
            self.setFillColor(COLORS['white'])
            self.drawString(0.75*inch, page_height - 0.27*inch, "JOURNEY RESEARCH")
            self.setFont('Helvetica', 8)
            self.setFillColor(COLORS['navy_mid'])
            right = f"Confidential · {self.workspace_name}"
            rw = self.stringWidth(right, 'Helvetica', 8)
            self.drawString(page_width - 0.75*inch - rw, page_height - 0.27*inch, right)

        self.setStrokeColor(COLORS['accent'])
        self.setLineWidth(1)
        self.line(0.75*inch, 0.7*inch, page_width - 0.75*inch, 0.7*inch)

        self.setFont('Helvetica', 7.5)
        self.setFillColor(COLORS['text_light'])
        self.drawString(0.75*inch, 0.52*inch, f"Exported {self.export_date}")

        page_text = f"Page {page_num} of {num_pages}"
        pw = self.stringWidth(page_text, 'Helvetica', 7.5)
        self.drawString((page_width - pw) / 2, 0.52*inch, page_text)


# ===== PAGE BUILDING FUNCTIONS =====


def _build_cover_page(story, styles, project_name, workspace_name, export_date):
    """Navy cover band with the project name"""
    band_width = letter[0] - 1.5*inch
    cover_bg = Drawing(band_width, 3.0*inch)
    cover_bg.add(Rect(0, 0, band_width, 3.0*inch, strokeColor=None, fillColor=COLORS['secondary'], rx=6, ry=6))
    cover_bg.add(Rect(0, 0, band_width, 5, strokeColor=None, fillColor=COLORS['accent']))
    story.append(Spacer(1, 1.1*inch))
    story.append(cover_bg)
    story.append(Spacer(1, -3.0*inch))

    story.append(Spacer(1, 0.6*inch))
    story.append(Paragraph("Research Examples", styles['CoverTitle']))
    story.append(HRFlowable(width="70%", thickness=1.5, color=COLORS['accent'],
                            spaceBefore=0, spaceAfter=14, hAlign='CENTER'))
    story.append(Paragraph(_text(project_name, 120), styles['CoverSubtitle']))
    story.append(Spacer(1, 1.3*inch))

    meta_style = ParagraphStyle(
        'CoverMeta',
        fontName='Helvetica',
        fontSize=10,
        textColor=COLORS['text_light'],
        alignment=TA_CENTER,
        leading=16,
    )
    story.append(Spacer(1, 0.35*inch))
    story.append(Paragraph(f"Workspace: <b>{_text(workspace_name, 120)}</b>", meta_style))
    story.append(Paragraph(f"Export Date: <b>{export_date}</b>", meta_style))
    story.append(PageBreak())


def _build_summary(story, styles, examples, stats):
    """Import statistics and the most frequent actors"""
    story.append(Paragraph("Summary", styles['SectionHeading']))

    metrics_data = [
        ['Metric', 'Value'],
        ['Total Examples', str(stats.get('total', len(examples)))],
        ['Imported from Screenshots or CSV', str(stats.get('imported', 0))],
        ['Entered Manually', str(stats.get('manual', 0))],
    ]
    metrics_table = Table(metrics_data, colWidths=[3.5*inch, 3*inch])
    metrics_table.setStyle(TableStyle([
        ('BACKGROUND', (0, 0), (-1, 0), COLORS['primary']),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.white),
        ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
        ('FONTNAME', (0, 1), (-1, -1), 'Helvetica'),
        ('FONTSIZE', (0, 0), (-1, -1), 10),
        ('ROWBACKGROUNDS', (0, 1), (-1, -1), [colors.white, COLORS['navy_lt']]),
        ('GRID', (0, 0), (-1, -1), 0.5, COLORS['border']),
        ('TOPPADDING', (0, 0), (-1, -1), 8),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 8),
    ]))
    story.append(metrics_table)
    story.append(Spacer(1, 0.3*inch))

    actor_counts = {}
    for example in examples:
        actor = (example.get('actor') or '').strip()
        if actor:
            actor_counts[actor] = actor_counts.get(actor, 0) + 1
    top_actors = sorted(actor_counts.items(), key=lambda item: item[1], reverse=True)[:5]

    if top_actors:
        story.append(Paragraph("<b>Most frequent actors</b>", styles['ExportBodyText']))
        drawing = Drawing(400, 40 + 30 * len(top_actors))
        chart = HorizontalBarChart()
        chart.x = 110
        chart.y = 20
        chart.height = 30 * len(top_actors)
        chart.width = 270
        chart.data = [[count for _, count in top_actors]]
        chart.categoryAxis.categoryNames = [name[:24] for name, _ in top_actors]
        chart.bars[0].fillColor = COLORS['primary']
        chart.valueAxis.valueMin = 0
        chart.categoryAxis.labels.fontSize = 8
        chart.valueAxis.labels.fontSize = 8
        drawing.add(chart)
        story.append(drawing)

    story.append(PageBreak())


def _build_example_card(example, styles):
    title = f"#{example.get('short_id') or example.get('id')} · {_text(example.get('actor'), 255)}"
    rows = [
        [Paragraph(title, styles['ExampleTitle']), ''],
        [Paragraph('GOAL', styles['FieldLabel']), Paragraph(_text(example.get('goal')), styles['FieldValue'])],
    ]
    for key, label in EXAMPLE_FIELDS:
        rows.append([
            Paragraph(label.upper(), styles['FieldLabel']),
            Paragraph(_text(example.get(key)), styles['FieldValue']),
        ])

    card = Table(rows, colWidths=[1.3*inch, 5.2*inch])
    card.setStyle(TableStyle([
        ('SPAN', (0, 0), (-1, 0)),
        ('BACKGROUND', (0, 0), (-1, 0), COLORS['navy_lt']),
        ('BOX', (0, 0), (-1, -1), 1, COLORS['navy_mid']),
        ('LINEBELOW', (0, 0), (-1, -2), 0.25, COLORS['border']),
        ('VALIGN', (0, 0), (-1, -1), 'TOP'),
        ('TOPPADDING', (0, 0), (-1, -1), 6),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 6),
        ('LEFTPADDING', (0, 0), (-1, -1), 8),
        ('RIGHTPADDING', (0, 0), (-1, -1), 8),
    ]))
    caption = f"Source: {example.get('import_source') or 'manual'} · Created {(example.get('created_at') or '')[:10]}"
    return KeepTogether([card, Paragraph(caption, styles['Caption']), Spacer(1, 0.2*inch)])


def _build_examples(story, styles, examples):
    story.append(Paragraph("Examples", styles['SectionHeading']))
    if not examples:
        story.append(Paragraph("This project has no examples yet.", styles['ExportBodyText']))
        return
    for example in examples:
        story.append(_build_example_card(example, styles))


# ===== MAIN FUNCTION =====


def generate_examples_pdf(project_name, workspace_name, examples, stats=None):
    """
    Render a project's examples to PDF.

    Args:
        project_name: Name shown on the cover
        workspace_name: Name shown on the cover and in page headers
        examples: List of example dicts (actor, goal, entry_point, actions, error, outcome, ...)
        stats: Optional dict with total / imported / manual counts
    """
    buffer = BytesIO()

    doc = SimpleDocTemplate(
        buffer,
        pagesize=letter,
        topMargin=0.75 * inch,
        bottomMargin=0.9 * inch,
        leftMargin=0.75 * inch,
        rightMargin=0.75 * inch,
        title=f"{project_name} examples",
    )

    styles = get_custom_styles()
    story = []
    export_date = datetime.now().strftime("%B %d, %Y")

    _build_cover_page(story, styles, project_name, workspace_name, export_date)
    _build_summary(story, styles, examples, stats or {})
    _build_examples(story, styles, examples)

    doc.build(
        story,
        canvasmaker=lambda *args, **kwargs: ExportCanvas(
            *args,
            workspace_name=workspace_name,
            export_date=export_date,
            **kwargs
        )
    )

    buffer.seek(0)
    return buffer
