import base64

from tests.fakes import ticket_rows

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


def test_ticket_details_fold_games(client, upstream):
    upstream.tickets["PPT123456789"] = ticket_rows("PPT123456789", games=3)

    response = client.get("/api/tickets/PPT123456789")

    assert response.status_code == 200
    body = response.json()
    assert body["booking_id"] == 500
    assert body["parent_name"] == "Asha Rao"
    assert [game["game_name"] for game in body["games"]] == ["Game 1", "Game 2", "Game 3"]


def test_ticket_reference_used_as_given_without_dialect(client, upstream):
    upstream.tickets["PPT123456789"] = ticket_rows("PPT123456789")

    assert client.get("/api/tickets/MAN123456789").status_code == 404
    assert client.get("/api/tickets/MAN123456789?dialect=ppt").status_code == 200


def test_unknown_dialect_is_rejected(client, upstream):
    response = client.get("/api/tickets/PPT123456789?dialect=XYZ")

    assert response.status_code == 400
    assert upstream.requests == []


def test_ticket_details_are_cached(client, upstream):
    upstream.tickets["PPT1"] = ticket_rows("PPT1")

    client.get("/api/tickets/PPT1")
    client.get("/api/tickets/PPT1")

    assert len(upstream.calls_to("/tickect/booking_ref/details")) == 1


def test_ticket_pdf(client, upstream):
    upstream.tickets["PPT1"] = ticket_rows("PPT1")

    response = client.get("/api/tickets/PPT1/pdf")

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert response.content.startswith(b"%PDF")


def test_ticket_qr_per_game(client, upstream):
    upstream.tickets["PPT1"] = ticket_rows("PPT1", games=2)

    first = client.get("/api/tickets/PPT1/qr.png")
    second = client.get("/api/tickets/PPT1/qr.png?game_index=1")

    assert first.status_code == 200
    assert first.content.startswith(PNG_MAGIC)
    assert second.content.startswith(PNG_MAGIC)
    assert first.content != second.content
    assert client.get("/api/tickets/PPT1/qr.png?game_index=2").status_code == 404


def test_resend_booking_confirmation(client, upstream, sent_emails):
    upstream.tickets["PPT1"] = ticket_rows("PPT1")

    response = client.post("/api/notifications/bookings/PPT1/send")

    assert response.status_code == 200
    body = response.json()
    assert body["booking_ref"] == "PPT1"
    assert body["whatsapp"]["outcome"] == "SENT"
    assert body["whatsapp"]["message_id"] == "wamid.TEST1"
    assert body["email"]["outcome"] == "SENT"
    assert body["email"]["degraded"] is False
    assert len(sent_emails) == 1


def test_whatsapp_failure_does_not_block_email(client, upstream, sent_emails):
    upstream.tickets["PPT1"] = ticket_rows("PPT1")
    upstream.whatsapp_response = (400, {"status": "error", "message": "(#132000) Number of parameters does not match"})

    body = client.post("/api/notifications/bookings/PPT1/send").json()

    assert body["whatsapp"]["outcome"] == "FAILED"
    assert body["whatsapp"]["error_type"] == "TemplateRejected"
    assert body["email"]["outcome"] == "SENT"
    assert len(sent_emails) == 1


def test_resend_for_unknown_booking(client, upstream):
    assert client.post("/api/notifications/bookings/PPT404/send").status_code == 404


def test_generic_email_with_attachment(client, sent_emails):
    response = client.post(
        "/api/notifications/email",
        json={
            "to": "asha@example.com",
            "subject": "Your ticket",
            "html": "<p>See attached</p>",
            "attachments": [
                {
                    "filename": "ticket.pdf",
                    "content_base64": base64.b64encode(b"%PDF-1.4 test").decode("ascii"),
                    "mime_type": "application/pdf",
                }
            ],
        },
    )

    assert response.status_code == 200
    assert response.json()["success"] is True
    (message,) = sent_emails
    assert message["Subject"] == "Your ticket"
    (attachment,) = list(message.iter_attachments())
    assert attachment.get_filename() == "ticket.pdf"
    assert attachment.get_content() == b"%PDF-1.4 test"


def test_generic_email_rejects_bad_attachment(client, sent_emails):
    response = client.post(
        "/api/notifications/email",
        json={
            "to": "asha@example.com",
            "subject": "Your ticket",
            "html": "<p>x</p>",
            "attachments": [{"filename": "a.bin", "content_base64": "not base64!"}],
        },
    )

    assert response.status_code == 400
    assert sent_emails == []


def test_generic_email_rejects_bad_recipient(client, sent_emails):
    response = client.post(
        "/api/notifications/email",
        json={"to": "nobody", "subject": "x", "html": "<p>x</p>"},
    )

    assert response.status_code == 400
    assert sent_emails == []
