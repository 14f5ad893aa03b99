import io

import pytest
from openpyxl import Workbook, load_workbook

from labbo.models.enum import EquipmentCondition
from labbo.services import qr_labels, spreadsheets


def xlsx_bytes(rows):
    workbook = Workbook()
    for row in rows:
        workbook.active.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def test_read_rows_normalizes_headers_and_skips_blank_lines():
    content = "Equipment Name,Category Name,Quantity,Serial\nScope,Optics,2,S-1\n,,,\n".encode("utf-8-sig")
    rows = spreadsheets.read_rows("items.CSV", content)
    assert rows == [{"name": "Scope", "category": "Optics", "stock": "2", "serial_number": "S-1"}]


def test_read_rows_from_xlsx():
    content = xlsx_bytes([["Name", "Category", "Stock"], ["Scope", "Optics", 3.0]])
    assert spreadsheets.read_rows("items.xlsx", content) == [{"name": "Scope", "category": "Optics", "stock": "3"}]


def test_read_rows_rejects_unknown_and_broken_files():
    with pytest.raises(ValueError, match="Unsupported"):
        spreadsheets.read_rows("items.txt", b"name\nScope\n")
    with pytest.raises(ValueError, match="XLSX"):
        spreadsheets.read_rows("items.xlsx", b"not a zip file")


def test_parse_import_row():
    categories = {"optics": object()}
    data, errors = spreadsheets.parse_import_row({"name": "Scope", "category": "OPTICS"}, categories)
    assert errors == []
    assert data["stock"] == 1
    assert data["condition"] == EquipmentCondition.GOOD

    _, errors = spreadsheets.parse_import_row(
        {"name": "", "category": "Optics", "stock": "-1", "purchase_price": "cheap"}, categories
    )
    assert errors == [
        "Name is required",
        "Stock must be a non-negative whole number, got '-1'",
        "Purchase price must be a number, got 'cheap'",
    ]


def test_build_export_xlsx():
    content, media_type = spreadsheets.build_export(["Name", "Condition"], [["Scope", EquipmentCondition.FAIR]],
                                                    "xlsx", sheet_title="Equipment")
    assert media_type == spreadsheets.XLSX_MEDIA_TYPE
    sheet = load_workbook(io.BytesIO(content)).active
    assert sheet.title == "Equipment"
    assert [c.value for c in sheet[2]] == ["Scope", "fair"]


@pytest.mark.parametrize("raw, message", [
    ("not json", "valid equipment data"),
    ('{"type": "other", "id": "1", "serial": "S"}', "not a lab equipment label"),
    ('{"type": "lab-equipment", "id": "1"}', "missing"),
])
def test_parse_payload_errors(raw, message):
    with pytest.raises(ValueError, match=message):
        qr_labels.parse_payload(raw)
