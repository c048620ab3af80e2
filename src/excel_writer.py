"""
excel_writer.py

Builds the Excel workbook from extracted people records.

Single sheet: "รายชื่อ"
    S.No prepended automatically, Page after it.
    One row per record, fixed column order:
        Name, Age, Address, Zone, Province, District, SubDistrict, Village
    Combined workbooks add Source_File so rows can be traced back.
    No colours. Frozen header row. Auto-filter. Fixed column widths.

Records arrive keyed however the scan service labelled them: template
labels ("ชื่อ-สกุล", "บ้านเลขที่") or field keys ("name", "houseNumber").
normalize_record() maps every known alias onto the output columns.
"""

import io
import logging
import re
from typing import Optional

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font
from openpyxl.utils import get_column_letter

logger = logging.getLogger(__name__)

_FONT_NAME   = "Calibri"
_FONT_HEADER = Font(name=_FONT_NAME, bold=True, size=10)
_FONT_BODY   = Font(name=_FONT_NAME, size=10)

_ALIGN_CENTER = Alignment(horizontal="center", vertical="center", wrap_text=False)
_ALIGN_LEFT   = Alignment(horizontal="left",   vertical="center", wrap_text=False)

SHEET_TITLE = "รายชื่อ"

# ── Column configuration ───────────────────────────────────────────────────────

OUTPUT_COLUMNS: list[str] = [
    "Name",
    "Age",
    "Address",
    "Zone",
    "Province",
    "District",
    "SubDistrict",
    "Village",
]

# Aliases checked in order; first non-empty value wins.
_COLUMN_ALIASES: dict[str, list[str]] = {
    "Name":        ["Name", "name", "ชื่อ-สกุล", "ชื่อ"],
    "Age":         ["Age", "age", "อายุ"],
    "Address":     ["Address", "address", "houseNumber", "บ้านเลขที่"],
    "Zone":        ["Zone", "zone", "หมู่"],
    "Province":    ["Province", "province", "จังหวัด"],
    "District":    ["District", "district", "อำเภอ"],
    "SubDistrict": ["SubDistrict", "subDistrict", "ตำบล"],
    "Village":     ["Village", "village", "หมู่บ้าน"],
}

_FIXED_WIDTHS: dict[str, int] = {
    "S.No":        6,
    "Page":        6,
    "Source_File": 25,
    "Name":        30,
    "Age":         10,
    "Address":     20,
    "Zone":        15,
    "Province":    20,
    "District":    20,
    "SubDistrict": 20,
    "Village":     20,
}


# ── Data Normalization ─────────────────────────────────────────────────────────

def _clean(value) -> str:
    """Cell text: None → "", whitespace collapsed."""
    if value is None:
        return ""
    return " ".join(str(value).split())


def _first_present(record: dict, aliases: list[str]) -> str:
    for key in aliases:
        value = _clean(record.get(key))
        if value:
            return value
    return ""


def _page_of(record: dict) -> Optional[int]:
    raw = record.get("page", record.get("pageNumber"))
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def normalize_record(record: dict) -> dict:
    """
    Map one raw service record onto OUTPUT_COLUMNS (+ Page, Source_File).
    Unknown keys are dropped.
    """
    row = {col: _first_present(record, aliases) for col, aliases in _COLUMN_ALIASES.items()}
    row["Page"] = _page_of(record)
    row["Source_File"] = _clean(record.get("source_file"))
    return row


def export_filename(original_name: str) -> str:
    """report.pdf → report.xlsx"""
    base = re.sub(r"\.[^/.]+$", "", original_name or "") or "export"
    return f"{base}.xlsx"


COMBINED_FILENAME = "combined.xlsx"


# ── Sheet builder ──────────────────────────────────────────────────────────────

def _write_records_sheet(sheet, records: list[dict], include_source: bool) -> None:
    headers = ["S.No", "Page"]
    if include_source:
        headers.append("Source_File")
    headers += OUTPUT_COLUMNS

    for col_idx, header in enumerate(headers, start=1):
        cell = sheet.cell(row=1, column=col_idx, value=header)
        cell.font      = _FONT_HEADER
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)

    sheet.freeze_panes = "A2"
    sheet.row_dimensions[1].height = 20
    sheet.auto_filter.ref = f"A1:{get_column_letter(len(headers))}1"

    for row_idx, raw_record in enumerate(records, start=2):
        row = normalize_record(raw_record)
        row["S.No"] = row_idx - 1

        for col_idx, col_name in enumerate(headers, start=1):
            value = row.get(col_name)
            cell = sheet.cell(row=row_idx, column=col_idx, value=value if value != "" else None)
            cell.font      = _FONT_BODY
            cell.alignment = _ALIGN_CENTER if col_name in ("S.No", "Page") else _ALIGN_LEFT

    for col_idx, col_name in enumerate(headers, start=1):
        sheet.column_dimensions[get_column_letter(col_idx)].width = _FIXED_WIDTHS.get(col_name, 20)


# ── Public API ─────────────────────────────────────────────────────────────────

def build_excel(records: list[dict], include_source: bool = False) -> bytes:
    """
    Build the workbook for a list of records.

    Args:
        records:        Raw service records, each tagged with "page"
                        (and "source_file" for combined exports).
        include_source: Add the Source_File column (combined exports).

    Returns:
        Raw .xlsx bytes.
    """
    wb = Workbook()
    ws = wb.active
    ws.title = SHEET_TITLE
    _write_records_sheet(ws, records, include_source)

    buffer = io.BytesIO()
    wb.save(buffer)
    buffer.seek(0)

    logger.info(f"Excel built: {len(records)} record row(s).")
    return buffer.read()
