# labbo/services/qr_labels.py
"""QR code rendering plus the JSON payload printed on equipment labels."""
import base64
import io
import json
from datetime import datetime
from typing import Any, Dict, Optional

import qrcode
from qrcode.constants import ERROR_CORRECT_M

from labbo.core.utils import utc_now

QR_PAYLOAD_TYPE = "lab-equipment"


def make_qr_png(data: str, box_size: int = 10, border: int = 4) -> bytes:
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, box_size=box_size, border=border)
    qr.add_data(data)
    qr.make(fit=True)
    image = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def png_data_url(png: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(png).decode("ascii")


def build_equipment_payload(equipment: Any, category_name: Optional[str] = None,
                            generated_at: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "id": str(equipment.id),
        "name": equipment.name,
        "serial": equipment.serial_number,
        "category": category_name,
        "location": equipment.location,
        "type": QR_PAYLOAD_TYPE,
        "generated": (generated_at or utc_now()).isoformat(),
    }


def encode_payload(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def parse_payload(raw: str) -> Dict[str, Any]:
    """
    Parses scanned label text. Raises ValueError when the text is not one of our labels.
    """
    try:
        payload = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise ValueError("QR code does not contain valid equipment data.") from e
    if not isinstance(payload, dict) or payload.get("type") != QR_PAYLOAD_TYPE:
        raise ValueError("QR code is not a lab equipment label.")
    if not payload.get("id") or not payload.get("serial"):
        raise ValueError("QR code is missing the equipment id or serial number.")
    return payload
