# inspection_reports.py
"""Excel reports over inspections: defects and compliance.

Both take an optional week-ending range and return ``.xlsx`` bytes built
with openpyxl: one header row, one row per record, then a blank row and a
SUMMARY row.
"""
import io
import datetime as dt
from dataclasses import dataclass
from typing import Optional

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from bulk_export import MissingParameter
from inspection_pdf import DAY_NAMES

XLSX_CONTENT_TYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'

DEFECT_COLUMNS = [
    ('Vehicle Reg', 12), ('Vehicle Type', 15), ('Inspector', 20), ('Week Ending', 14),
    ('Item #', 8), ('Day', 6), ('Item Description', 30), ('Defect Comments', 40),
    ('Inspection Status', 14),
]

COMPLIANCE_COLUMNS = [
    ('Vehicle Reg', 12), ('Vehicle Type', 15), ('Inspector', 20), ('Employee ID', 12),
    ('Week Ending', 14), ('Status', 12), ('Submitted', 14), ('Reviewed', 14),
]

DATE_FORMAT = 'DD/MM/YYYY'


@dataclass(frozen=True)
class DefectRow:
    """One checklist item marked ``attention``, with its inspection."""
    inspection_id: int
    week_ending: dt.date
    inspection_status: str
    vehicle_reg: str
    vehicle_type: str
    inspector: str
    item_number: int
    day_of_week: int
    description: str
    comments: str = ''


@dataclass(frozen=True)
class ComplianceRow:
    inspection_id: int
    week_ending: dt.date
    status: str
    vehicle_reg: str
    vehicle_type: str
    inspector: str
    employee_id: str = ''
    submitted_at: Optional[dt.datetime] = None
    reviewed_at: Optional[dt.datetime] = None


def parse_optional_range(date_from, date_to) -> tuple[Optional[dt.date], Optional[dt.date]]:
    """Either end may be left out; a value that is given must be an ISO date."""
    def one(value):
        value = (value or '').strip()
        if not value:
            return None
        try:
            return dt.date.fromisoformat(value)
        except ValueError:
            raise MissingParameter('dateFrom and dateTo must be ISO dates (YYYY-MM-DD)',
                                   details=f'got {value!r}') from None
    return one(date_from), one(date_to)


def report_file_name(prefix: str, date_from: Optional[dt.date], date_to: Optional[dt.date],
                     today: Optional[dt.date] = None) -> str:
    if date_from and date_to:
        span = f'{date_from.isoformat()}_to_{date_to.isoformat()}'
    else:
        span = (today or dt.date.today()).isoformat()
    return f'{prefix}_{span}.xlsx'


def format_status(status: str) -> str:
    return (status or '').replace('_', ' ').title()


def _sheet(title: str, columns: list[tuple[str, int]]):
    wb = Workbook()
    ws = wb.active
    ws.title = title
    thin = Side(style='thin')
    header_fill = PatternFill(start_color='4472C4', end_color='4472C4', fill_type='solid')
    header_font = Font(color='FFFFFF', bold=True, size=11)
    for c, (header, width) in enumerate(columns, 1):
        cell = ws.cell(row=1, column=c, value=header)
        cell.fill = header_fill
        cell.font = header_font
        cell.alignment = Alignment(horizontal='center')
        cell.border = Border(left=thin, right=thin, top=thin, bottom=thin)
        ws.column_dimensions[get_column_letter(c)].width = width
    ws.freeze_panes = 'A2'
    return wb, ws


def _write_row(ws, r: int, values: list):
    for c, v in enumerate(values, 1):
        cell = ws.cell(row=r, column=c, value=v)
        if isinstance(v, (dt.date, dt.datetime)):
            cell.number_format = DATE_FORMAT


def _summary(ws, r: int, cells: dict):
    # one blank row, then SUMMARY in column A
    r += 1
    ws.cell(row=r, column=1, value='SUMMARY').font = Font(bold=True)
    for c, v in cells.items():
        ws.cell(row=r, column=c, value=v)


def _to_bytes(wb) -> bytes:
    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()


def defects_workbook(rows: list[DefectRow]) -> bytes:
    wb, ws = _sheet('Defects Report', DEFECT_COLUMNS)
    r = 1
    for row in rows:
        r += 1
        day = DAY_NAMES[row.day_of_week - 1] if 1 <= row.day_of_week <= 7 else ''
        _write_row(ws, r, [
            row.vehicle_reg or '-', row.vehicle_type or '-', row.inspector or 'Unknown',
            row.week_ending, row.item_number, day, row.description,
            row.comments or '-', format_status(row.inspection_status),
        ])
    vehicles = {row.vehicle_reg for row in rows}
    _summary(ws, r + 1, {4: f'Total Defects: {len(rows)}', 7: f'Affected Vehicles: {len(vehicles)}'})
    return _to_bytes(wb)


def compliance_workbook(rows: list[ComplianceRow]) -> bytes:
    """Every inspection in range with its status; drafts count as not submitted."""
    wb, ws = _sheet('Inspection Compliance', COMPLIANCE_COLUMNS)
    r = 1
    for row in rows:
        r += 1
        _write_row(ws, r, [
            row.vehicle_reg or '-', row.vehicle_type or '-', row.inspector or 'Unknown',
            row.employee_id or '-', row.week_ending, format_status(row.status),
            row.submitted_at.date() if row.submitted_at else '-',
            row.reviewed_at.date() if row.reviewed_at else '-',
        ])
    total = len(rows)
    submitted = sum(1 for row in rows if row.status != 'draft')
    reviewed = sum(1 for row in rows if row.status == 'reviewed')
    rate = f'{submitted / total * 100:.1f}' if total else '0'
    _summary(ws, r + 1, {5: f'Total: {total}', 6: f'Submitted: {submitted}',
                         7: f'Reviewed: {reviewed}', 8: f'Compliance: {rate}%'})
    return _to_bytes(wb)
