"""
QR codes for plant lots.

Two payloads are supported: the full lot metadata as compact JSON, or only
the lookup URL of the lot. Either is rendered as a PNG with error
correction level M and returned raw or as a data: URL.
"""
import base64
import io
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import qrcode
from PIL import Image
from qrcode.constants import ERROR_CORRECT_M
from qrcode.image.pil import PilImage

from errors import NotFoundError, QREncodingError, ValidationError
from lots import LotTracker

logger = logging.getLogger(__name__)

DEFAULT_SIZE = 200
MIN_SIZE = 64
MAX_SIZE = 1024
MAX_BATCH = 50
MARGIN = 2
FORMATS = ("base64", "png")


def lot_url(lot: Dict[str, Any], base_url: str) -> str:
    return f"{base_url.rstrip('/')}/api/lots/{lot['_id']}"


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="milliseconds") + "Z"


def full_payload(lot: Dict[str, Any], species: Dict[str, Any], base_url: str) -> Dict[str, Any]:
    return {
        "lotId": lot["lot_id"],
        "speciesName": species["name"],
        "speciesCode": species["code"],
        "plantedDate": _iso(lot["planted_date"]),
        "zone": lot["zone"],
        "locationId": lot["location_id"],
        "url": lot_url(lot, base_url),
    }


def payload_text(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"))


def render_png(text: str, size: int = DEFAULT_SIZE) -> bytes:
    if not MIN_SIZE <= size <= MAX_SIZE:
        raise ValidationError(f"Size must be between {MIN_SIZE} and {MAX_SIZE} pixels")
    try:
        code = qrcode.QRCode(error_correction=ERROR_CORRECT_M, box_size=10, border=MARGIN)
        code.add_data(text)
        code.make(fit=True)
        img = code.make_image(image_factory=PilImage, fill_color="black", back_color="white").get_image()
        img = img.convert("L").resize((size, size), Image.NEAREST)
        buf = io.BytesIO()
        img.save(buf, format="PNG")
    except Exception as e:
        raise QREncodingError(f"Error generating QR code: {e}") from e
    return buf.getvalue()


def to_data_url(png: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(png).decode("ascii")


def encode(text: str, fmt: str = "base64", size: int = DEFAULT_SIZE):
    """PNG bytes for fmt="png", a data URL for fmt="base64"."""
    if fmt not in FORMATS:
        raise ValidationError('Invalid format. Use "base64" or "png"')
    png = render_png(text, size)
    return png if fmt == "png" else to_data_url(png)


class QRGenerator:
    def __init__(self, tracker: LotTracker):
        self.tracker = tracker

    def encode_full(self, lot_code: str, base_url: str, fmt: str = "base64", size: int = DEFAULT_SIZE):
        lot = self.tracker.get_by_code(lot_code)
        payload = full_payload(lot, self.tracker.species_for(lot), base_url)
        return lot, payload, encode(payload_text(payload), fmt, size)

    def encode_reference(self, lot_code: str, base_url: str, fmt: str = "base64", size: int = DEFAULT_SIZE):
        lot = self.tracker.get_by_code(lot_code)
        species = self.tracker.species_for(lot)
        url = lot_url(lot, base_url)
        info = {
            "lotId": lot["lot_id"],
            "speciesName": species["name"],
            "zone": lot["zone"],
            "plantedDate": _iso(lot["planted_date"]),
        }
        return lot, url, info, encode(url, fmt, size)

    def encode_batch(self, lot_codes: List[str], base_url: str, fmt: str = "base64",
                     size: int = DEFAULT_SIZE, mode: str = "full") -> Dict[str, Any]:
        if not lot_codes:
            raise ValidationError("Please provide an array of lot IDs")
        if len(lot_codes) > MAX_BATCH:
            raise ValidationError(f"Maximum {MAX_BATCH} lot IDs allowed per batch")
        if fmt not in FORMATS:
            raise ValidationError('Invalid format. Use "base64" or "png"')
        if not MIN_SIZE <= size <= MAX_SIZE:
            raise ValidationError(f"Size must be between {MIN_SIZE} and {MAX_SIZE} pixels")
        if mode not in ("full", "reference"):
            raise ValidationError('Invalid mode. Use "full" or "reference"')

        results = [self._batch_item(code, base_url, fmt, size, mode) for code in lot_codes]
        failed = sum(1 for r in results if "error" in r)
        return {
            "qr_codes": results,
            "format": fmt,
            "size": size,
            "mode": mode,
            "total": len(results),
            "requested": len(lot_codes),
            "succeeded": len(results) - failed,
            "failed": failed,
        }

    def _batch_item(self, code: str, base_url: str, fmt: str, size: int, mode: str) -> Dict[str, Any]:
        code = (code or "").strip().upper()
        lot_info: Optional[Dict[str, Any]] = None
        try:
            lot = self.tracker.get_by_code(code)
            species = self.tracker.species_for(lot)
            lot_info = full_payload(lot, species, base_url)
            text = payload_text(lot_info) if mode == "full" else lot_info["url"]
            png = render_png(text, size)
        except NotFoundError as e:
            return {"lot_id": code, "error": e.message}
        except Exception:
            logger.exception("Error generating QR for lot %s", code)
            return {"lot_id": code, "error": "Failed to generate QR code", "lot_info": lot_info}
        qr_code = to_data_url(png) if fmt == "base64" else base64.b64encode(png).decode("ascii")
        return {"lot_id": code, "qr_code": qr_code, "lot_info": lot_info}

    def stats(self) -> Dict[str, Any]:
        repo = self.tracker.repo
        total = repo.count_documents()
        return {
            "total_lots": total,
            "lots_with_photos": repo.count_documents({"photos.0": {"$exists": True}}),
            "qr_codes_available": total,
            "message": "QR codes can be generated for all plant lots",
        }
