"""Letterhead and footer drawing for PDF reports."""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from reportlab.lib.colors import HexColor
from reportlab.lib.units import inch

BRAND_GREEN = "#15803d"
BRAND_TEXT = "#374151"


@dataclass
class PDFBrandingContext:
    company_name: str = "SoilDose"
    company_tagline: Optional[str] = "Recomendação de adubação por ponto amostral"
    company_email: Optional[str] = None


def draw_professional_letterhead(canvas, doc, branding: PDFBrandingContext, report_title: str,
                                 module_color: str = BRAND_GREEN) -> None:
    """Colored band with company name and report title at the top of the page."""
    width, height = doc.pagesize
    canvas.saveState()
    canvas.setFillColor(HexColor(module_color))
    canvas.rect(0, height - 0.9 * inch, width, 0.9 * inch, stroke=0, fill=1)
    canvas.setFillColor(HexColor("#ffffff"))
    canvas.setFont("Helvetica-Bold", 15)
    canvas.drawString(doc.leftMargin, height - 0.45 * inch, branding.company_name)
    if branding.company_tagline:
        canvas.setFont("Helvetica", 8)
        canvas.drawString(doc.leftMargin, height - 0.65 * inch, branding.company_tagline)
    canvas.setFont("Helvetica-Bold", 10)
    canvas.drawRightString(width - doc.rightMargin, height - 0.45 * inch, report_title)
    canvas.restoreState()


def draw_professional_footer(canvas, doc, branding: PDFBrandingContext) -> None:
    """Footer line with generation date, contact and page number."""
    width, _ = doc.pagesize
    canvas.saveState()
    canvas.setStrokeColor(HexColor("#d1d5db"))
    canvas.line(doc.leftMargin, 0.5 * inch, width - doc.rightMargin, 0.5 * inch)
    canvas.setFillColor(HexColor(BRAND_TEXT))
    canvas.setFont("Helvetica", 7)
    left = f"{branding.company_name} - {datetime.now().strftime('%d/%m/%Y %H:%M')}"
    if branding.company_email:
        left += f" - {branding.company_email}"
    canvas.drawString(doc.leftMargin, 0.35 * inch, left)
    canvas.drawRightString(width - doc.rightMargin, 0.35 * inch, f"Página {doc.page}")
    canvas.restoreState()
