import io
from datetime import datetime, timezone
from typing import List, Dict, Any

import qrcode
import qrcode.image.svg

TRUST_BASE = 50
TRUST_PER_EVENT = 10
TRUST_PER_TX = 20
TRUST_CAP = 100


def utcnow() -> datetime:
    # stored naive; every timestamp in the database is UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def trust_score(events: List[Dict[str, Any]]) -> int:
    if not events:
        return 0
    with_tx = sum(1 for e in events if e.get("txHash"))
    score = TRUST_BASE + len(events) * TRUST_PER_EVENT + with_tx * TRUST_PER_TX
    return min(score, TRUST_CAP)


def trace_url(frontend_url: str, batch_id: str) -> str:
    return f"{frontend_url}/trace/{batch_id}"


def _qr(data: str, image_factory=None):
    qr = qrcode.QRCode(border=2, box_size=10, image_factory=image_factory)
    qr.add_data(data)
    qr.make(fit=True)
    return qr.make_image()


def qr_png(data: str) -> bytes:
    img = _qr(data)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def qr_svg(data: str) -> bytes:
    img = _qr(data, image_factory=qrcode.image.svg.SvgPathImage)
    buf = io.BytesIO()
    img.save(buf)
    return buf.getvalue()
