import io

from openpyxl import Workbook
from openpyxl.styles import Font


SUMMARY_SHEET = "Saldos"
SUMMARY_FILE_NAME = "saldos-finales.xlsx"
SUMMARY_COLUMNS = [
    ("Mes", 18),
    ("Saldo Inicial", 18),
    ("Saldo Final", 18),
    ("Diferencia", 18),
]
TOTAL_LABEL = "Saldo anual"
NUMBER_FORMAT = "#,##0.00"
NEGATIVE_COLOR = "FFC62828"
POSITIVE_COLOR = "FF2E7D32"
XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _delta_color(value):
    return NEGATIVE_COLOR if value < 0 else POSITIVE_COLOR


def build_summary_workbook(rows, total_delta):
    """Render reconciled period rows plus the yearly total as xlsx bytes."""
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = SUMMARY_SHEET

    sheet.append([header for header, _ in SUMMARY_COLUMNS])
    for idx, (_, width) in enumerate(SUMMARY_COLUMNS, start=1):
        sheet.column_dimensions[sheet.cell(row=1, column=idx).column_letter].width = width
        sheet.cell(row=1, column=idx).font = Font(bold=True)

    for row in rows:
        sheet.append([
            row["label"],
            float(row["initial_balance"]),
            float(row["final_balance"]),
            float(row["delta"]),
        ])
        current = sheet.max_row
        for column in (2, 3, 4):
            sheet.cell(row=current, column=column).number_format = NUMBER_FORMAT
        sheet.cell(row=current, column=4).font = Font(color=_delta_color(row["delta"]))

    sheet.append([TOTAL_LABEL, None, None, float(total_delta)])
    total_row = sheet.max_row
    sheet.cell(row=total_row, column=1).font = Font(bold=True)
    total_cell = sheet.cell(row=total_row, column=4)
    total_cell.number_format = NUMBER_FORMAT
    total_cell.font = Font(bold=True, color=_delta_color(total_delta))

    buff = io.BytesIO()
    workbook.save(buff)
    return buff.getvalue()
