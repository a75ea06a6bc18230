"""
Recommendation PDF Report Service.
Generates PDF reports with per-point recommendations and product statistics.
"""
import io
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional
from xml.sax.saxutils import escape

from reportlab.lib.colors import HexColor
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from soildose.services.pdf_branding import (
    BRAND_GREEN,
    PDFBrandingContext,
    draw_professional_footer,
    draw_professional_letterhead,
)
from soildose.services.recommendation_aggregator import aggregate_by_product, compute_product_stats
from soildose.services.recommendation_rules import STATUS_ALREADY_SATISFIED, STATUS_ZERO

logger = logging.getLogger(__name__)

PRIMARY_COLOR = HexColor(BRAND_GREEN)
TEXT_COLOR = HexColor("#374151")
LIGHT_BG = HexColor("#dcfce7")
MUTED_BG = HexColor("#f3f4f6")
GRID_COLOR = HexColor("#d1d5db")


def _fmt(value: Any, decimals: int = 1) -> str:
    if isinstance(value, (int, float)):
        return f"{value:,.{decimals}f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return str(value if value is not None else "")


def _line_dict(line: Any) -> Dict[str, Any]:
    return line.to_dict() if hasattr(line, "to_dict") else dict(line)


def _table_style(header_color=PRIMARY_COLOR) -> TableStyle:
    return TableStyle([
        ('BACKGROUND', (0, 0), (-1, 0), header_color),
        ('TEXTCOLOR', (0, 0), (-1, 0), HexColor("#ffffff")),
        ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
        ('TEXTCOLOR', (0, 1), (-1, -1), TEXT_COLOR),
        ('FONTSIZE', (0, 0), (-1, -1), 7),
        ('ALIGN', (3, 1), (-1, -1), 'RIGHT'),
        ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
        ('GRID', (0, 0), (-1, -1), 0.5, GRID_COLOR),
        ('ROWBACKGROUNDS', (0, 1), (-1, -1), [HexColor("#ffffff"), MUTED_BG]),
        ('PADDING', (0, 0), (-1, -1), 3),
    ])


def create_recommendation_pdf_report(
    results_by_point: Mapping[str, Iterable[Any]],
    aggregated: Optional[List[Dict[str, Any]]] = None,
    stats: Optional[List[Dict[str, Any]]] = None,
    title: str = "Recomendação de Adubação",
    branding: Optional[PDFBrandingContext] = None
) -> bytes:
    """
    Generate a PDF report for a recommendation run.

    Args:
        results_by_point: Engine output, point -> lines
        aggregated: Rows from ``aggregate_by_product`` (computed when omitted)
        stats: Rows from ``compute_product_stats`` (computed when omitted)
        title: Report title
        branding: Letterhead data

    Returns:
        PDF file as bytes
    """
    if aggregated is None:
        aggregated = aggregate_by_product(results_by_point)
    if stats is None:
        stats = compute_product_stats(aggregated)
    branding = branding or PDFBrandingContext()

    buffer = io.BytesIO()

    def header_footer(canvas, doc):
        draw_professional_letterhead(canvas, doc, branding, report_title=title.upper())
        draw_professional_footer(canvas, doc, branding)

    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        rightMargin=0.6*inch,
        leftMargin=0.6*inch,
        topMargin=1.2*inch,
        bottomMargin=0.7*inch,
        title=title
    )

    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        'ReportTitle',
        parent=styles['Title'],
        fontSize=15,
        textColor=PRIMARY_COLOR,
        spaceAfter=6,
        alignment=TA_CENTER
    )
    heading_style = ParagraphStyle(
        'ReportHeading',
        parent=styles['Heading2'],
        fontSize=11,
        textColor=PRIMARY_COLOR,
        spaceBefore=8,
        spaceAfter=4
    )
    body_style = ParagraphStyle(
        'ReportBody',
        parent=styles['Normal'],
        fontSize=8,
        textColor=TEXT_COLOR,
        spaceAfter=3
    )

    story = []
    story.append(Paragraph(escape(title), title_style))

    line_count = sum(len(lines) for lines in results_by_point.values())
    header_table = Table([
        ["Data:", datetime.now().strftime("%d/%m/%Y %H:%M"), "Pontos:", str(len(results_by_point))],
        ["Produtos:", str(len(stats)), "Linhas:", str(line_count)],
    ], colWidths=[0.9*inch, 2.4*inch, 0.9*inch, 2.4*inch])
    header_table.setStyle(TableStyle([
        ('BACKGROUND', (0, 0), (0, -1), LIGHT_BG),
        ('BACKGROUND', (2, 0), (2, -1), LIGHT_BG),
        ('TEXTCOLOR', (0, 0), (-1, -1), TEXT_COLOR),
        ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
        ('FONTNAME', (2, 0), (2, -1), 'Helvetica-Bold'),
        ('FONTSIZE', (0, 0), (-1, -1), 8),
        ('GRID', (0, 0), (-1, -1), 0.5, GRID_COLOR),
        ('PADDING', (0, 0), (-1, -1), 4),
    ]))
    story.append(header_table)
    story.append(Spacer(1, 8))

    story.append(Paragraph("Doses por produto", heading_style))
    if stats:
        stats_rows = [["Produto", "Unidade", "Pontos", "Mínimo", "Média", "Máximo"]]
        for s in stats:
            stats_rows.append([
                s["product"], s["unit"], str(s["point_count"]),
                _fmt(s["min"]), _fmt(s["mean"]), _fmt(s["max"])
            ])
        stats_table = Table(stats_rows, repeatRows=1)
        stats_table.setStyle(_table_style())
        story.append(stats_table)
    else:
        story.append(Paragraph("Nenhuma dose recomendada.", body_style))

    story.append(Paragraph("Recomendações por ponto", heading_style))
    for point, lines in results_by_point.items():
        lines = [_line_dict(line) for line in lines]
        story.append(Paragraph(f"<b>Ponto {escape(str(point))}</b>", body_style))
        if not lines:
            story.append(Paragraph("Sem recomendações para este ponto.", body_style))
            continue
        rows = [["Atributo", "Produto", "Fórmula", "Necessidade", "Entregue", "Dose"]]
        for line in lines:
            dose = f"{_fmt(line['dose'], 0)} {line['unit']}"
            if line.get("status") == STATUS_ALREADY_SATISFIED:
                dose = "já suprido"
            elif line.get("status") == STATUS_ZERO:
                dose = f"0 {line['unit']}"
            rows.append([
                line["attribute"].upper(),
                line["product"],
                Paragraph(escape(str(line["source_formula"])), body_style),
                _fmt(line["raw_need"]),
                _fmt(line["delivered_amount"]),
                dose,
            ])
        table = Table(rows, colWidths=[0.8*inch, 1.1*inch, 2.6*inch, 0.9*inch, 0.8*inch, 0.9*inch], repeatRows=1)
        table.setStyle(_table_style())
        story.append(table)
        story.append(Spacer(1, 6))

    story.append(Spacer(1, 8))
    story.append(Paragraph(
        "<b>Nota:</b> Doses calculadas a partir da necessidade de cada atributo, descontando "
        "o que outros produtos já entregaram ao mesmo ponto. <i>Conferir com o responsável técnico.</i>",
        body_style
    ))

    doc.build(story, onFirstPage=header_footer, onLaterPages=header_footer)
    logger.info(f"[Report] PDF generated for {len(results_by_point)} point(s)")
    return buffer.getvalue()
