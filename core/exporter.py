from __future__ import annotations

from io import BytesIO
from typing import Any

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from core.services.reporting import register_header, register_line

__all__ = ["register_workbook"]

MONEY_FORMAT = "#,##0.00"
LEAD_COLUMNS = 4


def register_workbook(register: dict[str, Any]) -> BytesIO:
    """Render a payroll register as a single-sheet ``.xlsx`` stream."""
    wb = Workbook()
    ws = wb.active
    ws.title = "Payroll Register"

    head_fill = PatternFill("solid", fgColor="F2F3F5")
    subtotal_fill = PatternFill("solid", fgColor="FAFAFA")
    bold = Font(bold=True)
    center = Alignment(horizontal="center", vertical="center", wrap_text=True)
    thin = Side(style="thin", color="DDDDDD")
    border = Border(top=thin, left=thin, right=thin, bottom=thin)

    ws.append([f"Payroll Register {register['run_number']}", "", "", register["period"]])
    ws.cell(row=1, column=1).font = Font(bold=True, size=12)
    ws.append([])

    header = register_header(register)
    ws.append(header)
    header_row = ws.max_row
    for c in range(1, len(header) + 1):
        cell = ws.cell(row=header_row, column=c)
        cell.fill = head_fill
        cell.font = bold
        cell.alignment = center
        cell.border = border

    def write(values: list[Any], *, emphasis: bool = False) -> None:
        ws.append([float(v) if c > LEAD_COLUMNS else v for c, v in enumerate(values, start=1)])
        r = ws.max_row
        for c in range(1, len(values) + 1):
            cell = ws.cell(row=r, column=c)
            cell.border = border
            if c > LEAD_COLUMNS:
                cell.number_format = MONEY_FORMAT
            if emphasis:
                cell.font = bold
                cell.fill = subtotal_fill

    for dept in register["departments"]:
        for row in dept["rows"]:
            write(register_line(register, row))
        write(register_line(register, dept["subtotal"], [f"{dept['department']} Subtotal", "", "", ""]), emphasis=True)
    write(register_line(register, register["grand_total"], ["Grand Total", "", "", ""]), emphasis=True)

    ws.freeze_panes = ws.cell(row=header_row + 1, column=LEAD_COLUMNS + 1)
    for col_idx in range(1, ws.max_column + 1):
        max_len = 0
        for row_idx in range(header_row, ws.max_row + 1):
            val = ws.cell(row=row_idx, column=col_idx).value
            max_len = max(max_len, len(f"{val:,.2f}" if isinstance(val, float) else str(val or "")))
        ws.column_dimensions[get_column_letter(col_idx)].width = min(32, max(10, max_len + 2))

    bio = BytesIO()
    wb.save(bio)
    bio.seek(0)
    return bio
