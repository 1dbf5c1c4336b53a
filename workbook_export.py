# ==========================================================
# FACULTY REPORTER — WORKBOOK EXPORT
# Full rewrite of reports.xlsx from the cache, one row per activity
# ==========================================================

import os
import re
import tempfile
from pathlib import Path

import pandas as pd
from openpyxl.styles import Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

SHEET_NAME = "Reports"
EXPORT_COLUMNS = ["UID", "Name", "Team", "Report Date", "Activity", "Count/Hours", "Submitted At"]
HEADER_FILL = "FFE0E0E0"
STRIPE_FILL = "FFFAFAFA"
COLUMN_WIDTH = 20
XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


class ExportError(Exception):
    pass


def _as_number(value):
    # Only counts that read back identically become numbers ("007" and "1.50" stay text).
    text = str(value or "").strip()
    if re.fullmatch(r"-?\d+", text) and str(int(text)) == text:
        return int(text)
    if re.fullmatch(r"-?\d*\.\d+", text) and str(float(text)) == text:
        return float(text)
    return text


def report_rows(reports):
    for report in reports:
        for activity in report.activities:
            yield [
                report.uid,
                report.name,
                report.team,
                report.report_date,
                activity.name,
                _as_number(activity.count),
                report.submitted_at,
            ]


def build_export_frame(reports):
    return pd.DataFrame(list(report_rows(reports)), columns=EXPORT_COLUMNS)


def style_report_sheet(ws):
    thin = Side(border_style="thin", color="000000")
    boxed = Border(left=thin, right=thin, top=thin, bottom=thin)
    for cell in ws[1]:
        cell.font = Font(bold=True)
        cell.fill = PatternFill(fill_type="solid", fgColor=HEADER_FILL)
        cell.border = boxed

    for row_idx in range(2, ws.max_row + 1):
        if row_idx % 2 == 0:
            for cell in ws[row_idx]:
                cell.fill = PatternFill(fill_type="solid", fgColor=STRIPE_FILL)

    for col_idx in range(1, len(EXPORT_COLUMNS) + 1):
        ws.column_dimensions[get_column_letter(col_idx)].width = COLUMN_WIDTH
    ws.auto_filter.ref = f"A1:{get_column_letter(len(EXPORT_COLUMNS))}1"


class WorkbookExporter:
    def __init__(self, store, path):
        self.store = store
        self.path = Path(os.path.abspath(path))

    def exists(self):
        return self.path.exists()

    def regenerate(self):
        """Rebuild the workbook from every cached report, replacing any previous file."""
        tmp_path = None
        try:
            frame = build_export_frame(self.store.get_all())
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".reports-", suffix=".xlsx", dir=self.path.parent)
            os.close(fd)
            with pd.ExcelWriter(tmp_path, engine="openpyxl") as writer:
                frame.to_excel(writer, sheet_name=SHEET_NAME, index=False)
                style_report_sheet(writer.sheets[SHEET_NAME])
            os.replace(tmp_path, self.path)
        except Exception as exc:
            print(f"❌ Workbook export failed: {exc}")
            raise ExportError(str(exc)) from exc
        finally:
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)

        print(f"✅ Workbook regenerated: {self.path} ({len(frame)} row(s))")
        return self.path

    def ensure(self):
        if not self.exists():
            return self.regenerate()
        return self.path
