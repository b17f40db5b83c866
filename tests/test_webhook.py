import asyncio
import hashlib
import hmac
import json

from heyhey import main

from .utils import status_payload, text_message_payload, webhook_envelope


def test_verify_handshake(client, monkeypatch):
    monkeypatch.setattr(main.webhook_runtime, "verify_token", "tok-123")
    r = client.get(
        "/api/webhooks/whatsapp",
        params={"hub.mode": "subscribe", "hub.verify_token": "tok-123", "hub.challenge": "42"},
    )
    assert r.status_code == 200
    assert r.text == "42"

    r = client.get(
        "/api/webhooks/whatsapp",
        params={"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "42"},
    )
    assert r.status_code == 403
    r = client.get("/api/webhooks/whatsapp", params={"hub.verify_token": "tok-123", "hub.challenge": "42"})
    assert r.status_code == 403


def test_bad_json_is_rejected(client):
    r = client.post("/api/webhooks/whatsapp", content=b"{not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    r = client.post("/api/webhooks/whatsapp", json=[1, 2, 3])
    assert r.status_code == 400


def test_signature_is_enforced_when_secret_configured(client, monkeypatch):
    monkeypatch.setattr(main.webhook_runtime, "meta_app_secret", "app-secret")
    body = json.dumps({"object": "page", "entry": []}).encode("utf-8")

    r = client.post("/api/webhooks/whatsapp", content=body, headers={"Content-Type": "application/json"})
    assert r.status_code == 401
    r = client.post(
        "/api/webhooks/whatsapp",
        content=body,
        headers={"Content-Type": "application/json", "X-Hub-Signature-256": "sha256=deadbeef"},
    )
    assert r.status_code == 401

    sig = hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()
    r = client.post(
        "/api/webhooks/whatsapp",
        content=body,
        headers={"Content-Type": "application/json", "X-Hub-Signature-256": f"sha256={sig}"},
    )
    assert r.status_code == 200
    assert r.json() == {"status": "received"}


def test_non_whatsapp_objects_are_acknowledged_and_ignored(client, db_manager):
    r = client.post("/api/webhooks/whatsapp", json={"object": "page", "entry": [{"id": "x", "changes": []}]})
    assert r.status_code == 200
    logs, total = asyncio.run(db_manager.list_webhook_logs())
    assert total == 0


def test_inbound_text_creates_message_contact_and_notification(client, db_manager, signup, connect, messenger):
    headers = signup()
    conn = connect(headers)

    r = client.post("/api/webhooks/whatsapp", json=text_message_payload(body="Hola, que tal?"))
    assert r.status_code == 200

    msgs = client.get("/api/whatsapp/send", params={"connectionId": conn["id"]}, headers=headers).json()["messages"]
    assert len(msgs) == 1
    assert msgs[0]["direction"] == "inbound"
    assert msgs[0]["fromNumber"] == "34600111222"
    assert msgs[0]["content"] == "Hola, que tal?"
    assert msgs[0]["status"] == "received"
    assert msgs[0]["whatsappMessageId"] == "wamid.in.1"

    contacts = client.get("/api/contacts", headers=headers).json()["contacts"]
    assert [(c["phoneNumber"], c["name"]) for c in contacts] == [("34600111222", "Ana")]
    assert contacts[0]["lastMessageAt"]

    notes = client.get("/api/notifications", headers=headers).json()
    assert notes["unreadCount"] == 1
    assert notes["notifications"][0]["type"] == "new_message"
    assert "Ana" in notes["notifications"][0]["title"]

    logs, total = asyncio.run(db_manager.list_webhook_logs())
    assert total == 1
    assert logs[0]["event_type"] == "messages"
    assert logs[0]["processed"] in (1, True)

    # No flows configured: nothing is sent back
    assert messenger.sent == []


def test_duplicate_delivery_is_stored_once(client, signup, connect):
    headers = signup()
    conn = connect(headers)
    payload = text_message_payload(wa_id="wamid.dup")
    assert client.post("/api/webhooks/whatsapp", json=payload).status_code == 200
    assert client.post("/api/webhooks/whatsapp", json=payload).status_code == 200
    msgs = client.get("/api/whatsapp/send", params={"connectionId": conn["id"]}, headers=headers).json()["messages"]
    assert len(msgs) == 1


def test_chatbot_replies_through_the_connection(client, signup, connect, messenger):
    headers = signup()
    conn = connect(headers, access_token="EAAbot")
    r = client.post(
        "/api/chatbot/flows",
        json={
            "name": "Horario",
            "triggerType": "keyword",
            "triggerValue": "horario",
            "nodes": [{"nodeType": "message", "content": "Abrimos de 9 a 18"}],
        },
        headers=headers,
    )
    assert r.status_code == 200, r.text

    client.post("/api/webhooks/whatsapp", json=text_message_payload(body="Cual es el horario?"))

    assert len(messenger.sent) == 1
    sent = messenger.sent[0]
    assert sent["to"] == "34600111222"
    assert sent["message"] == "Abrimos de 9 a 18"
    assert sent["phone_number_id"] == "1000"
    assert sent["access_token"] == "EAAbot"

    msgs = client.get("/api/whatsapp/send", params={"connectionId": conn["id"]}, headers=headers).json()["messages"]
    outbound = [m for m in msgs if m["direction"] == "outbound"]
    assert len(outbound) == 1
    assert outbound[0]["content"] == "Abrimos de 9 a 18"
    assert outbound[0]["whatsappMessageId"] == "wamid.out.1"


def test_chatbot_skips_blocked_contacts(client, signup, connect, messenger):
    headers = signup()
    connect(headers)
    client.post(
        "/api/chatbot/flows",
        json={"name": "Todo", "triggerType": "all", "nodes": [{"content": "Hola!"}]},
        headers=headers,
    )
    r = client.post("/api/contacts", json={"phoneNumber": "+34 600 111 222", "name": "Ana"}, headers=headers)
    contact = r.json()["contact"]
    client.put("/api/contacts", json={"id": contact["id"], "isBlocked": True}, headers=headers)

    client.post("/api/webhooks/whatsapp", json=text_message_payload(body="hola"))
    assert messenger.sent == []


def test_chatbot_reply_failure_does_not_fail_the_webhook(client, signup, connect, messenger, upstream_error):
    headers = signup()
    conn = connect(headers)
    client.post(
        "/api/chatbot/flows",
        json={"name": "Todo", "triggerType": "all", "nodes": [{"content": "Hola!"}]},
        headers=headers,
    )
    messenger.error = upstream_error(400, "Recipient not allowed")
    failed_before = main.webhook_runtime.state.failed
    r = client.post("/api/webhooks/whatsapp", json=text_message_payload(body="hola"))
    assert r.status_code == 200
    assert main.webhook_runtime.state.failed == failed_before
    msgs = client.get("/api/whatsapp/send", params={"connectionId": conn["id"]}, headers=headers).json()["messages"]
    assert [m["direction"] for m in msgs] == ["inbound"]


def test_media_messages_are_stored_without_chatbot(client, signup, connect, messenger):
    headers = signup()
    conn = connect(headers)
    client.post(
        "/api/chatbot/flows",
        json={"name": "Todo", "triggerType": "all", "nodes": [{"content": "Hola!"}]},
        headers=headers,
    )
    payload = webhook_envelope(
        [
            {
                "field": "messages",
                "value": {
                    "metadata": {"phone_number_id": "1000"},
                    "messages": [
                        {
                            "from": "34600111222",
                            "id": "wamid.img",
                            "timestamp": "1700000000",
                            "type": "image",
                            "image": {"id": "media-1", "caption": "factura"},
                        }
                    ],
                },
            }
        ]
    )
    client.post("/api/webhooks/whatsapp", json=payload)
    msgs = client.get("/api/whatsapp/send", params={"connectionId": conn["id"]}, headers=headers).json()["messages"]
    assert msgs[0]["messageType"] == "image"
    assert msgs[0]["content"] == "[image] factura"
    assert messenger.sent == []


def test_status_updates_never_move_backwards(client, signup, connect):
    headers = signup()
    conn = connect(headers)
    r = client.post(
        "/api/whatsapp/send",
        json={"connectionId": conn["id"], "to": "34600111222", "message": "hola"},
        headers=headers,
    )
    wa_id = r.json()["messageId"]

    def current_status():
        msgs = client.get("/api/whatsapp/send", params={"connectionId": conn["id"]}, headers=headers).json()
        return msgs["messages"][0]["status"]

    client.post("/api/webhooks/whatsapp", json=status_payload(wa_id, "read"))
    assert current_status() == "read"
    client.post("/api/webhooks/whatsapp", json=status_payload(wa_id, "delivered"))
    assert current_status() == "read"
    client.post("/api/webhooks/whatsapp", json=status_payload(wa_id, "failed"))
    assert current_status() == "failed"


def test_template_status_update_notifies_owner(client, signup, connect):
    headers = signup()
    connect(headers)
    payload = webhook_envelope(
        [
            {
                "field": "message_template_status_update",
                "value": {
                    "event": "APPROVED",
                    "message_template_id": 123,
                    "message_template_name": "bienvenida",
                    "reason": "NONE",
                },
            }
        ]
    )
    assert client.post("/api/webhooks/whatsapp", json=payload).status_code == 200
    notes = client.get("/api/notifications", headers=headers).json()["notifications"]
    assert notes[0]["type"] == "template_status"
    assert notes[0]["content"] == "Template bienvenida is now APPROVED"


def test_messages_for_unknown_account_are_logged_only(client, db_manager):
    r = client.post("/api/webhooks/whatsapp", json=text_message_payload(waba_id="other", phone_number_id="999"))
    assert r.status_code == 200
    logs, total = asyncio.run(db_manager.list_webhook_logs())
    assert total == 1
    assert logs[0]["connection_id"] is None


def test_concurrent_duplicate_deliveries_are_handled_once(client, signup, connect, messenger):
    headers = signup()
    conn = connect(headers)
    client.post(
        "/api/chatbot/flows",
        json={"name": "Eco", "triggerType": "all", "nodes": [{"content": "Recibido"}]},
        headers=headers,
    )
    payload = text_message_payload(wa_id="wamid.race", body="hola")

    async def deliver_twice():
        await asyncio.gather(
            main.message_processor.process_incoming_message(payload),
            main.message_processor.process_incoming_message(payload),
        )

    asyncio.run(deliver_twice())

    msgs = client.get("/api/whatsapp/send", params={"connectionId": conn["id"]}, headers=headers).json()["messages"]
    assert [m["direction"] for m in msgs if m["direction"] == "inbound"] == ["inbound"]
    notes = client.get("/api/notifications", headers=headers).json()["notifications"]
    assert [n["type"] for n in notes] == ["new_message"]
    assert [s["message"] for s in messenger.sent] == ["Recibido"]
