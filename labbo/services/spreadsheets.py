# labbo/services/spreadsheets.py
"""CSV / XLSX reading for bulk equipment import and writing for exports."""
import csv
import io
import zipfile
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from openpyxl import Workbook, load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from labbo.models.enum import EquipmentCondition

CSV_MEDIA_TYPE = "text/csv"
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

HEADER_ALIASES = {
    "name": "name",
    "equipment_name": "name",
    "category": "category",
    "category_name": "category",
    "stock": "stock",
    "quantity": "stock",
    "condition": "condition",
    "location": "location",
    "serial": "serial_number",
    "serial_number": "serial_number",
    "description": "description",
    "purchase_price": "purchase_price",
    "price": "purchase_price",
}


def _normalize_header(value: Any) -> str:
    key = str(value or "").strip().lower().replace(" ", "_").replace("-", "_")
    return HEADER_ALIASES.get(key, key)


def _cell_to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def read_rows(filename: str, content: bytes) -> List[Dict[str, str]]:
    """
    Returns one dict per data row keyed by normalized header. Raises ValueError
    for unsupported or unreadable files.
    """
    lowered = (filename or "").lower()
    if lowered.endswith(".csv"):
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise ValueError("CSV file must be UTF-8 encoded.") from e
        reader = csv.reader(io.StringIO(text))
        raw_rows = [row for row in reader]
    elif lowered.endswith(".xlsx"):
        try:
            workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
        except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
            raise ValueError(f"Could not read XLSX file: {e}") from e
        sheet = workbook.active
        raw_rows = [list(row) for row in sheet.iter_rows(values_only=True)]
        workbook.close()
    else:
        raise ValueError("Unsupported file type. Upload a .csv or .xlsx file.")

    if not raw_rows:
        return []
    headers = [_normalize_header(h) for h in raw_rows[0]]
    rows: List[Dict[str, str]] = []
    for raw in raw_rows[1:]:
        values = [_cell_to_str(v) for v in raw]
        if not any(values):
            continue
        rows.append({headers[i]: values[i] if i < len(values) else "" for i in range(len(headers)) if headers[i]})
    return rows


def parse_import_row(row: Mapping[str, str], categories_by_name: Mapping[str, Any]
                     ) -> Tuple[Dict[str, Any], List[str]]:
    """Validates one import row. Returns (cleaned values, error messages)."""
    errors: List[str] = []
    data: Dict[str, Any] = {}

    name = (row.get("name") or "").strip()
    if not name:
        errors.append("Name is required")
    elif len(name) > 200:
        errors.append("Name must be at most 200 characters")
    data["name"] = name

    category_name = (row.get("category") or "").strip()
    category = categories_by_name.get(category_name.lower()) if category_name else None
    if not category_name:
        errors.append("Category is required")
    elif category is None:
        errors.append(f"Category '{category_name}' not found")
    data["category"] = category

    stock_raw = (row.get("stock") or "").strip()
    if stock_raw:
        try:
            stock = int(float(stock_raw))
            if stock < 0:
                raise ValueError
            data["stock"] = stock
        except ValueError:
            errors.append(f"Stock must be a non-negative whole number, got '{stock_raw}'")
    else:
        data["stock"] = 1

    condition_raw = (row.get("condition") or "").strip().lower()
    if condition_raw:
        try:
            data["condition"] = EquipmentCondition(condition_raw)
        except ValueError:
            allowed = ", ".join(c.value for c in EquipmentCondition)
            errors.append(f"Condition must be one of: {allowed}")
    else:
        data["condition"] = EquipmentCondition.GOOD

    price_raw = (row.get("purchase_price") or "").strip()
    if price_raw:
        try:
            data["purchase_price"] = float(price_raw)
        except ValueError:
            errors.append(f"Purchase price must be a number, got '{price_raw}'")

    data["location"] = (row.get("location") or "").strip() or None
    data["serial_number"] = (row.get("serial_number") or "").strip() or None
    data["description"] = (row.get("description") or "").strip() or None
    return data, errors


def _export_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M")
    if hasattr(value, "value"):
        return value.value
    return value


def build_export(headers: Sequence[str], rows: Iterable[Sequence[Any]], fmt: str,
                 sheet_title: Optional[str] = None) -> Tuple[bytes, str]:
    """Renders rows as CSV or XLSX. Returns (file bytes, media type)."""
    if fmt == "xlsx":
        workbook = Workbook()
        sheet = workbook.active
        sheet.title = (sheet_title or "Export")[:31]
        sheet.append(list(headers))
        for row in rows:
            sheet.append([_export_value(v) for v in row])
        buffer = io.BytesIO()
        workbook.save(buffer)
        return buffer.getvalue(), XLSX_MEDIA_TYPE

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(headers)
    for row in rows:
        writer.writerow(["" if v is None else _export_value(v) for v in row])
    return buffer.getvalue().encode("utf-8-sig"), CSV_MEDIA_TYPE
