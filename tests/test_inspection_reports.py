"""
Tests for the defects and compliance workbooks.
"""
import io
import datetime as dt

import pytest
from openpyxl import load_workbook

from bulk_export import MissingParameter
from inspection_reports import (
    ComplianceRow, DefectRow, compliance_workbook, defects_workbook, format_status,
    parse_optional_range, report_file_name,
)


def sheet(data):
    return load_workbook(io.BytesIO(data)).active


def values(ws):
    return [list(r) for r in ws.iter_rows(values_only=True)]


def defect(**kw):
    base = dict(inspection_id=1, week_ending=dt.date(2024, 3, 10), inspection_status='submitted',
                vehicle_reg='AB12CDE', vehicle_type='truck', inspector='Dana Driver',
                item_number=2, day_of_week=3, description='Mirrors', comments='Cracked')
    base.update(kw)
    return DefectRow(**base)


def compliance(**kw):
    base = dict(inspection_id=1, week_ending=dt.date(2024, 3, 10), status='submitted',
                vehicle_reg='AB12CDE', vehicle_type='truck', inspector='Dana Driver')
    base.update(kw)
    return ComplianceRow(**base)


class TestDefectsWorkbook:

    def test_one_row_per_defect_then_summary(self):
        rows = [defect(), defect(item_number=9, day_of_week=1, comments=''),
                defect(inspection_id=2, vehicle_reg='XY34ZFG', vehicle_type='van')]
        ws = sheet(defects_workbook(rows))
        assert ws.title == 'Defects Report'

        table = values(ws)
        assert table[0] == ['Vehicle Reg', 'Vehicle Type', 'Inspector', 'Week Ending', 'Item #', 'Day',
                            'Item Description', 'Defect Comments', 'Inspection Status']
        assert table[1] == ['AB12CDE', 'truck', 'Dana Driver', dt.datetime(2024, 3, 10), 2, 'Wed',
                            'Mirrors', 'Cracked', 'Submitted']
        assert table[2][5] == 'Mon'
        assert table[2][7] == '-'
        assert all(v is None for v in table[4])
        assert table[5][0] == 'SUMMARY'
        assert table[5][3] == 'Total Defects: 3'
        assert table[5][6] == 'Affected Vehicles: 2'

    def test_header_is_frozen(self):
        assert sheet(defects_workbook([defect()])).freeze_panes == 'A2'


class TestComplianceWorkbook:

    def test_rows_and_summary(self):
        rows = [
            compliance(status='reviewed', submitted_at=dt.datetime(2024, 3, 11, 8, 30),
                       reviewed_at=dt.datetime(2024, 3, 12, 9, 0), employee_id='E42'),
            compliance(inspection_id=2, status='submitted', submitted_at=dt.datetime(2024, 3, 11)),
            compliance(inspection_id=3, status='draft', inspector=''),
            compliance(inspection_id=4, status='in_progress'),
        ]
        table = values(sheet(compliance_workbook(rows)))
        assert table[0] == ['Vehicle Reg', 'Vehicle Type', 'Inspector', 'Employee ID',
                            'Week Ending', 'Status', 'Submitted', 'Reviewed']
        assert table[1][3:] == ['E42', dt.datetime(2024, 3, 10), 'Reviewed',
                                dt.datetime(2024, 3, 11), dt.datetime(2024, 3, 12)]
        assert table[3][2] == 'Unknown'
        assert table[3][6:] == ['-', '-']
        assert table[4][5] == 'In Progress'

        summary = table[6]
        assert summary[0] == 'SUMMARY'
        assert summary[4:] == ['Total: 4', 'Submitted: 3', 'Reviewed: 1', 'Compliance: 75.0%']


class TestHelpers:

    def test_optional_range(self):
        assert parse_optional_range(None, '') == (None, None)
        assert parse_optional_range(' 2024-01-01 ', None) == (dt.date(2024, 1, 1), None)

    def test_bad_date_is_rejected(self):
        with pytest.raises(MissingParameter) as exc_info:
            parse_optional_range('2024-13-01', None)
        assert exc_info.value.status == 400

    def test_file_names(self):
        a, b = dt.date(2024, 1, 1), dt.date(2024, 3, 31)
        assert report_file_name('Defects_Report', a, b) == 'Defects_Report_2024-01-01_to_2024-03-31.xlsx'
        assert report_file_name('Inspection_Compliance', a, None, today=dt.date(2024, 5, 2)) == \
            'Inspection_Compliance_2024-05-02.xlsx'

    def test_format_status(self):
        assert format_status('in_progress') == 'In Progress'
        assert format_status('') == ''
