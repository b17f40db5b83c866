import asyncio
from datetime import datetime, timedelta, timezone

from heyhey import main
from heyhey.db import to_iso
from heyhey.scheduler import STALE_SENDING_ERROR, ScheduledMessageDispatcher


def _iso(delta):
    return (datetime.now(timezone.utc) + delta).isoformat().replace("+00:00", "Z")


def _schedule(client, headers, conn, **overrides):
    body = {
        "connectionId": conn["id"],
        "recipientPhone": "+34 600 111 222",
        "content": "Recordatorio de tu cita",
        "scheduledAt": _iso(timedelta(hours=1)),
    }
    body.update(overrides)
    return client.post("/api/scheduled-messages", json=body, headers=headers)


def test_schedule_list_and_cancel(client, signup, connect):
    headers = signup()
    conn = connect(headers)

    r = _schedule(client, headers, conn)
    assert r.status_code == 201
    row = r.json()["scheduledMessage"]
    assert row["status"] == "pending"
    assert row["recipientPhone"] == "34600111222"
    assert row["scheduledAt"].endswith("+00:00")

    later = _schedule(client, headers, conn, scheduledAt=_iso(timedelta(days=2))).json()["scheduledMessage"]
    listed = client.get("/api/scheduled-messages", headers=headers).json()["scheduledMessages"]
    assert [s["id"] for s in listed] == [row["id"], later["id"]]
    assert listed[0]["connectionPhone"] == "15550001"

    assert client.delete("/api/scheduled-messages", params={"id": row["id"]}, headers=headers).json() == {"success": True}
    listed = client.get("/api/scheduled-messages", headers=headers).json()["scheduledMessages"]
    assert listed[0]["status"] == "cancelled"
    assert client.delete("/api/scheduled-messages", params={"id": "ghost"}, headers=headers).status_code == 404


def test_schedule_validation(client, signup, connect):
    headers = signup()
    conn = connect(headers)
    assert _schedule(client, headers, conn, content="").status_code == 400
    assert _schedule(client, headers, conn, scheduledAt="manana").status_code == 400
    assert _schedule(client, headers, conn, recipientPhone="abc").status_code == 400
    assert _schedule(client, headers, conn, connectionId="ghost").status_code == 404

    other = signup(email="other@example.com")
    assert _schedule(client, other, conn).status_code == 404


def test_dispatcher_sends_due_messages(client, signup, connect, messenger):
    headers = signup()
    conn = connect(headers, access_token="EAAsched")
    due = _schedule(client, headers, conn, scheduledAt=_iso(timedelta(minutes=-1))).json()["scheduledMessage"]
    future = _schedule(client, headers, conn).json()["scheduledMessage"]

    assert asyncio.run(main.dispatcher.dispatch_due()) == 1
    assert messenger.sent == [
        {
            "phone_number_id": "1000",
            "access_token": "EAAsched",
            "to": "34600111222",
            "message": "Recordatorio de tu cita",
            "message_type": "text",
        }
    ]

    rows = {s["id"]: s for s in client.get("/api/scheduled-messages", headers=headers).json()["scheduledMessages"]}
    assert rows[due["id"]]["status"] == "sent"
    assert rows[due["id"]]["sentAt"]
    assert rows[due["id"]]["whatsappMessageId"] == "wamid.out.1"
    assert rows[future["id"]]["status"] == "pending"

    # Sent messages are not picked up again and can no longer be cancelled
    assert asyncio.run(main.dispatcher.dispatch_due()) == 0
    assert client.delete("/api/scheduled-messages", params={"id": due["id"]}, headers=headers).status_code == 400

    notes = client.get("/api/notifications", headers=headers).json()["notifications"]
    assert notes[0]["type"] == "scheduled_sent"

    msgs = client.get("/api/whatsapp/send", params={"connectionId": conn["id"]}, headers=headers).json()["messages"]
    assert [m["direction"] for m in msgs] == ["outbound"]


def test_dispatcher_records_failures(client, signup, connect, messenger, upstream_error):
    headers = signup()
    conn = connect(headers)
    row = _schedule(client, headers, conn, scheduledAt=_iso(timedelta(seconds=-5))).json()["scheduledMessage"]
    messenger.error = upstream_error(400, "Recipient phone number not in allowed list")

    assert asyncio.run(main.dispatcher.dispatch_due()) == 0
    stored = client.get("/api/scheduled-messages", headers=headers).json()["scheduledMessages"][0]
    assert stored["id"] == row["id"]
    assert stored["status"] == "failed"
    assert stored["error"] == "Recipient phone number not in allowed list"

    notes = client.get("/api/notifications", headers=headers).json()["notifications"]
    assert notes[0]["type"] == "scheduled_failed"
    assert "Recipient phone number not in allowed list" in notes[0]["content"]


def test_cancelled_messages_are_not_sent(client, signup, connect, messenger):
    headers = signup()
    conn = connect(headers)
    row = _schedule(client, headers, conn, scheduledAt=_iso(timedelta(minutes=-1))).json()["scheduledMessage"]
    client.delete("/api/scheduled-messages", params={"id": row["id"]}, headers=headers)
    assert asyncio.run(main.dispatcher.dispatch_due()) == 0
    assert messenger.sent == []


def test_media_rows_send_link_with_caption(client, signup, connect, messenger):
    headers = signup()
    conn = connect(headers)
    _schedule(
        client,
        headers,
        conn,
        scheduledAt=_iso(timedelta(minutes=-1)),
        messageType="image",
        mediaUrl="https://cdn.example.com/promo.jpg",
        content="Oferta de hoy",
    )
    assert asyncio.run(main.dispatcher.dispatch_due()) == 1
    sent = messenger.sent[0]
    assert sent["message_type"] == "image"
    assert sent["message"] == {"link": "https://cdn.example.com/promo.jpg", "caption": "Oferta de hoy"}


def _statuses(client, headers):
    return {s["id"]: s for s in client.get("/api/scheduled-messages", headers=headers).json()["scheduledMessages"]}


def test_unexpected_send_error_fails_the_row_and_keeps_going(client, signup, connect, messenger):
    headers = signup()
    conn = connect(headers)
    first = _schedule(client, headers, conn, scheduledAt=_iso(timedelta(minutes=-2))).json()["scheduledMessage"]
    second = _schedule(client, headers, conn, scheduledAt=_iso(timedelta(minutes=-1))).json()["scheduledMessage"]

    real_send = messenger.send_message
    calls = []

    async def flaky_send(**kwargs):
        calls.append(kwargs["to"])
        if len(calls) == 1:
            raise RuntimeError("socket closed")
        return await real_send(**kwargs)

    messenger.send_message = flaky_send
    assert asyncio.run(main.dispatcher.dispatch_due()) == 1

    rows = _statuses(client, headers)
    assert rows[first["id"]]["status"] == "failed"
    assert rows[first["id"]]["error"] == "socket closed"
    assert rows[second["id"]]["status"] == "sent"

    # Nothing is left claimed, so a later pass has no work and the failed row can be cancelled
    assert asyncio.run(main.dispatcher.dispatch_due()) == 0
    assert client.delete("/api/scheduled-messages", params={"id": first["id"]}, headers=headers).status_code == 200


def test_rows_stuck_in_sending_are_failed(client, signup, connect, db_manager, messenger):
    headers = signup()
    conn = connect(headers)
    row = _schedule(client, headers, conn, scheduledAt=_iso(timedelta(minutes=-1))).json()["scheduledMessage"]

    async def crashed_pass():
        claimed = await db_manager.claim_due_scheduled_messages(to_iso(datetime.now(timezone.utc)), 10)
        assert [r["id"] for r in claimed] == [row["id"]]

    asyncio.run(crashed_pass())

    # A fresh claim belongs to a pass that may still be running
    assert asyncio.run(main.dispatcher.dispatch_due()) == 0
    assert _statuses(client, headers)[row["id"]]["status"] == "sending"

    sweeper = ScheduledMessageDispatcher(db_manager, main.message_processor, stale_after_seconds=0)

    async def later_pass():
        await db_manager._execute(
            "UPDATE scheduled_messages SET updated_at = ? WHERE id = ?",
            (to_iso(datetime.now(timezone.utc) - timedelta(hours=1)), row["id"]),
        )
        return await sweeper.dispatch_due()

    assert asyncio.run(later_pass()) == 0
    stored = _statuses(client, headers)[row["id"]]
    assert stored["status"] == "failed"
    assert stored["error"] == STALE_SENDING_ERROR
    assert messenger.sent == []
    notes = client.get("/api/notifications", headers=headers).json()["notifications"]
    assert notes[0]["type"] == "scheduled_failed"


def test_cancel_loses_to_a_claim_made_after_it_was_read(client, signup, connect, db_manager, messenger):
    headers = signup()
    conn = connect(headers)
    row = _schedule(client, headers, conn, scheduledAt=_iso(timedelta(minutes=-1))).json()["scheduledMessage"]

    real_get = db_manager.get_scheduled_message

    async def get_then_claim(scheduled_id, user_id=None):
        found = await real_get(scheduled_id, user_id)
        await db_manager.claim_due_scheduled_messages(to_iso(datetime.now(timezone.utc)), 10)
        return found

    db_manager.get_scheduled_message = get_then_claim
    r = client.delete("/api/scheduled-messages", params={"id": row["id"]}, headers=headers)
    assert r.status_code == 400
    assert _statuses(client, headers)[row["id"]]["status"] == "sending"


def test_dispatcher_does_not_overwrite_a_cancelled_row(client, signup, connect, db_manager):
    headers = signup()
    conn = connect(headers)
    row = _schedule(client, headers, conn).json()["scheduledMessage"]
    assert client.delete("/api/scheduled-messages", params={"id": row["id"]}, headers=headers).status_code == 200

    assert asyncio.run(db_manager.set_scheduled_status(row["id"], "sent", only_from="sending")) is False
    assert _statuses(client, headers)[row["id"]]["status"] == "cancelled"


def test_overlapping_dispatch_passes_send_each_row_once(client, signup, connect, messenger):
    headers = signup()
    conn = connect(headers)
    ids = [
        _schedule(client, headers, conn, scheduledAt=_iso(timedelta(minutes=-i)), content=f"msg {i}").json()[
            "scheduledMessage"
        ]["id"]
        for i in range(1, 5)
    ]

    async def two_passes():
        return await asyncio.gather(main.dispatcher.dispatch_due(), main.dispatcher.dispatch_due())

    assert sum(asyncio.run(two_passes())) == 4
    assert sorted(s["message"] for s in messenger.sent) == ["msg 1", "msg 2", "msg 3", "msg 4"]
    rows = _statuses(client, headers)
    assert [rows[i]["status"] for i in ids] == ["sent"] * 4
