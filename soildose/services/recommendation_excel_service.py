"""
Recommendation Excel Export Service.
Generates workbook reports for a recommendation run.
"""
from io import BytesIO
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional
from openpyxl import Workbook
from openpyxl.styles import Font, Alignment, PatternFill, Border, Side
from openpyxl.utils import get_column_letter

from soildose.services.recommendation_aggregator import aggregate_by_product, compute_product_stats
from soildose.services.recommendation_rules import STATUS_ALREADY_SATISFIED, STATUS_ZERO

SOILDOSE_GREEN = "15803D"
SOILDOSE_DARK = "166534"
LIGHT_BG = "DCFCE7"
MUTED_FONT_COLOR = "6B7280"

STATUS_LABELS = {
    STATUS_ALREADY_SATISFIED: "já suprido",
    STATUS_ZERO: "dose zero",
}

LINE_COLUMNS = [
    ("Ponto", "point"),
    ("Atributo", "attribute"),
    ("Produto", "product"),
    ("Garantia (%)", "guarantee_percent"),
    ("Necessidade", "raw_need"),
    ("Entregue", "delivered_amount"),
    ("Dose", "dose"),
    ("Unidade", "unit"),
    ("Fórmula", "source_formula"),
    ("Situação", "status"),
]


def _line_dict(line: Any) -> Dict[str, Any]:
    return line.to_dict() if hasattr(line, "to_dict") else dict(line)


class RecommendationExcelService:
    """Service for generating recommendation Excel reports."""

    def __init__(self):
        self.header_fill = PatternFill(start_color=SOILDOSE_DARK, end_color=SOILDOSE_DARK, fill_type="solid")
        self.header_font = Font(bold=True, color="FFFFFF", size=11)
        self.title_font = Font(bold=True, size=16, color=SOILDOSE_DARK)
        self.muted_font = Font(italic=True, color=MUTED_FONT_COLOR)
        self.light_fill = PatternFill(start_color=LIGHT_BG, end_color=LIGHT_BG, fill_type="solid")
        self.border = Border(
            left=Side(style='thin'),
            right=Side(style='thin'),
            top=Side(style='thin'),
            bottom=Side(style='thin')
        )

    def _apply_header_style(self, ws, row_num: int, max_col: int):
        for col in range(1, max_col + 1):
            cell = ws.cell(row=row_num, column=col)
            cell.fill = self.header_fill
            cell.font = self.header_font
            cell.alignment = Alignment(horizontal='center', vertical='center', wrap_text=True)
            cell.border = self.border

    def _auto_adjust_columns(self, ws):
        for column in ws.columns:
            values = [str(cell.value) for cell in column if cell.value is not None]
            max_length = max((len(v) for v in values), default=0)
            ws.column_dimensions[get_column_letter(column[0].column)].width = min(max(max_length + 2, 12), 45)

    def _write_table(self, ws, start_row: int, headers: List[str], rows: Iterable[List[Any]]) -> int:
        for col, header in enumerate(headers, 1):
            ws.cell(row=start_row, column=col, value=header)
        self._apply_header_style(ws, start_row, len(headers))
        row_num = start_row
        for row_num, values in enumerate(rows, start_row + 1):
            for col, value in enumerate(values, 1):
                cell = ws.cell(row=row_num, column=col, value=value)
                cell.border = self.border
                if isinstance(value, float):
                    cell.number_format = '#,##0.00'
        return row_num

    def generate_recommendation_excel(
        self,
        results_by_point: Mapping[str, Iterable[Any]],
        aggregated: Optional[List[Dict[str, Any]]] = None,
        stats: Optional[List[Dict[str, Any]]] = None,
        title: str = "Recomendação de Adubação"
    ) -> BytesIO:
        """
        Generate the Excel report for a recommendation run.

        Args:
            results_by_point: Engine output, point -> lines
            aggregated: Rows from ``aggregate_by_product`` (computed when omitted)
            stats: Rows from ``compute_product_stats`` (computed when omitted)
            title: Report title

        Returns:
            BytesIO with Excel file content
        """
        if aggregated is None:
            aggregated = aggregate_by_product(results_by_point)
        if stats is None:
            stats = compute_product_stats(aggregated)

        wb = Workbook()
        if wb.active:
            wb.remove(wb.active)

        self._create_lines_sheet(wb, results_by_point, title)
        self._create_aggregated_sheet(wb, aggregated)
        self._create_stats_sheet(wb, stats)

        buffer = BytesIO()
        wb.save(buffer)
        buffer.seek(0)
        return buffer

    def _create_lines_sheet(self, wb, results_by_point: Mapping[str, Iterable[Any]], title: str) -> Any:
        ws = wb.create_sheet("Recomendações")
        ws.cell(row=1, column=1, value=title.upper()).font = self.title_font
        ws.merge_cells(start_row=1, start_column=1, end_row=1, end_column=len(LINE_COLUMNS))
        ws.cell(row=2, column=1, value=f"Gerado em {datetime.now().strftime('%d/%m/%Y %H:%M')}").font = self.muted_font

        rows = []
        for lines in results_by_point.values():
            for line in lines:
                data = _line_dict(line)
                data["status"] = STATUS_LABELS.get(data.get("status"), data.get("status"))
                rows.append([data.get(key) for _, key in LINE_COLUMNS])

        last_row = self._write_table(ws, 4, [label for label, _ in LINE_COLUMNS], rows)
        if not rows:
            ws.cell(row=last_row + 1, column=1, value="Nenhuma recomendação gerada").font = self.muted_font
        ws.freeze_panes = "A5"
        self._auto_adjust_columns(ws)
        return ws

    def _create_aggregated_sheet(self, wb, aggregated: List[Dict[str, Any]]) -> Any:
        ws = wb.create_sheet("Por produto")
        rows = [[r["point"], r["product"], r["total_dose"], r["unit"]] for r in aggregated]
        self._write_table(ws, 1, ["Ponto", "Produto", "Dose total", "Unidade"], rows)
        ws.freeze_panes = "A2"
        self._auto_adjust_columns(ws)
        return ws

    def _create_stats_sheet(self, wb, stats: List[Dict[str, Any]]) -> Any:
        ws = wb.create_sheet("Estatísticas")
        rows = [
            [s["product"], s["unit"], s["point_count"], s["min"], s["mean"], s["max"]]
            for s in stats
        ]
        last_row = self._write_table(ws, 1, ["Produto", "Unidade", "Pontos", "Mínimo", "Média", "Máximo"], rows)
        for row in range(2, last_row + 1):
            ws.cell(row=row, column=1).fill = self.light_fill
        self._auto_adjust_columns(ws)
        return ws


recommendation_excel_service = RecommendationExcelService()
