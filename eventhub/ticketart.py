"""
Ticket artifacts: the signed verification payload carried by the QR code and
the SVG ticket image that embeds it.

Payload format (what a check-in scanner reads):
    base64url(json{"tid", "email", "iat"}) + "." + base64url(hmac_sha256)
"""
import base64
import hashlib
import hmac
import json
import os
from typing import Optional, TypedDict

import qrcode

from .errors import ValidationError
from .helpers import ct_equal, now_ts
from .templating import render

TICKET_SECRET = os.environ.get("TICKET_SECRET", "dev-ticket-secret-change-me")

QR_MODULE_PX = 6


class TicketClaims(TypedDict):
    tid: int
    email: str
    iat: int


class TicketData(TypedDict, total=False):
    transaction_id: int
    event_name: str
    event_date: float
    event_location: str
    ticket_type: str
    attendee_name: str
    attendee_email: str
    quantity: int
    qr_payload: str


def _b64e(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def _b64d(s: str) -> bytes:
    return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))


def _sign(body: str, secret: str) -> str:
    mac = hmac.new(secret.encode(), body.encode(), hashlib.sha256).digest()
    return _b64e(mac)


def generate_verification_payload(
    transaction_id: int, email: str,
    issued_at: Optional[float] = None,
    secret: Optional[str] = None,
) -> str:
    claims = {
        "tid": int(transaction_id),
        "email": email,
        "iat": int((now_ts() if issued_at is None else issued_at) * 1000),
    }
    body = _b64e(json.dumps(claims, separators=(",", ":")).encode())
    return f"{body}.{_sign(body, secret or TICKET_SECRET)}"


def verify_payload(token: str, secret: Optional[str] = None) -> TicketClaims:
    try:
        body, sig = token.strip().split(".", 1)
    except (AttributeError, ValueError):
        raise ValidationError("Malformed ticket payload")
    expected = _sign(body, secret or TICKET_SECRET)
    if not ct_equal(expected, sig):
        raise ValidationError("Invalid ticket signature")
    try:
        claims = json.loads(_b64d(body))
    except (ValueError, json.JSONDecodeError):
        raise ValidationError("Malformed ticket payload")
    if not {"tid", "email", "iat"} <= set(claims):
        raise ValidationError("Malformed ticket payload")
    return claims


def qr_matrix(payload: str) -> list[list[bool]]:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M, border=2
    )
    qr.add_data(payload)
    qr.make(fit=True)
    return qr.get_matrix()


def generate_ticket_artifact(data: TicketData) -> bytes:
    """Render the ticket as an SVG image. Layout is cosmetic; the QR payload
    is the contract."""
    matrix = qr_matrix(data["qr_payload"])
    cells = [
        (x * QR_MODULE_PX, y * QR_MODULE_PX)
        for y, row in enumerate(matrix)
        for x, dark in enumerate(row)
        if dark
    ]
    svg = render(
        "ticket.svg.j2",
        ticket=data,
        qr_cells=cells,
        qr_size=len(matrix) * QR_MODULE_PX,
        module=QR_MODULE_PX,
    )
    return svg.encode("utf-8")
