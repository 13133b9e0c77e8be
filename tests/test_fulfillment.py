"""Tests for ticket payloads and artifacts."""
import json

import pytest

from eventhub import ticketart
from eventhub.errors import ValidationError
from eventhub.model import transactions
from eventhub.model.db import DONE
from eventhub.model.fulfillment import build_artifact, ticket_data
from eventhub.model.transactions import TicketLine


def test_payload_round_trip():
    token = ticketart.generate_verification_payload(
        42, "budi@example.com", issued_at=1_700_000_000.5
    )
    claims = ticketart.verify_payload(token)
    assert claims == {
        "tid": 42, "email": "budi@example.com", "iat": 1_700_000_000_500,
    }


def test_payload_rejects_tampering():
    token = ticketart.generate_verification_payload(42, "budi@example.com")
    body, sig = token.split(".")
    forged = ticketart._b64e(json.dumps(
        {"tid": 43, "email": "budi@example.com", "iat": 0}
    ).encode())
    with pytest.raises(ValidationError):
        ticketart.verify_payload(f"{forged}.{sig}")
    with pytest.raises(ValidationError):
        ticketart.verify_payload(token, secret="another-secret")


@pytest.mark.parametrize("token", ["", "no-dot", "abc.def", None])
def test_payload_rejects_garbage(token):
    with pytest.raises(ValidationError):
        ticketart.verify_payload(token)


def test_artifact_is_svg_with_qr():
    data = {
        "transaction_id": 7,
        "event_name": "Jazz <Night>",
        "event_date": 1_760_000_000.0,
        "event_location": "Jakarta",
        "ticket_type": "VIP",
        "attendee_name": "Budi Santoso",
        "attendee_email": "budi@example.com",
        "quantity": 2,
        "qr_payload": ticketart.generate_verification_payload(
            7, "budi@example.com"
        ),
    }
    svg = ticketart.generate_ticket_artifact(data).decode("utf-8")
    assert svg.lstrip().startswith("<svg") or svg.lstrip().startswith("<?xml")
    assert "Jazz &lt;Night&gt;" in svg
    assert "Budi Santoso" in svg
    assert "<rect" in svg


async def test_confirmed_transaction_artifact(db, world):
    tx = await transactions.create(
        db, world.as_buyer, world.event.id, [TicketLine(world.vip.id, 2)]
    )
    await transactions.upload_proof(db, world.as_buyer, tx.id, "r.jpg")
    tx = await transactions.confirm(db, world.as_organizer, tx.id, DONE)

    data = ticket_data(tx)
    assert data["ticket_type"] == "VIP"
    assert data["quantity"] == 2
    assert data["attendee_email"] == "budi@example.com"
    assert ticketart.verify_payload(data["qr_payload"])["tid"] == tx.id

    artifact = build_artifact(tx)
    assert artifact is not None
    assert b"Jazz Night" in artifact


def test_build_artifact_swallows_failures(caplog):
    class Broken:
        id = 1
        user = None  # ticket_data() blows up on this

    assert build_artifact(Broken()) is None
    assert "ticket artifact failed" in caplog.text
