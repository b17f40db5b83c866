import asyncio
import json

import httpx
import pytest

from heyhey.whatsapp import WhatsAppAPIError, WhatsAppMessenger, build_message_payload


def test_connect_list_and_delete(client, signup, connect):
    headers = signup()
    conn = connect(headers)
    assert conn["phoneNumberId"] == "1000"
    assert conn["status"] == "connected"
    assert "accessToken" not in conn

    r = client.post(
        "/api/whatsapp/connect",
        json={"phoneNumberId": "1000", "wabaId": "waba-1", "businessName": "Acme 2", "accessToken": "EAAnew"},
        headers=headers,
    )
    assert r.json()["message"] == "Connection updated"
    assert r.json()["connection"]["id"] == conn["id"]
    assert r.json()["connection"]["businessName"] == "Acme 2"

    listed = client.get("/api/whatsapp/connect", headers=headers).json()["connections"]
    assert [c["id"] for c in listed] == [conn["id"]]

    assert client.post("/api/whatsapp/connect", json={"wabaId": "x"}, headers=headers).status_code == 400

    r = client.delete("/api/whatsapp/connect", params={"id": conn["id"]}, headers=headers)
    assert r.json() == {"message": "Connection deleted"}
    assert client.get("/api/whatsapp/connect", headers=headers).json()["connections"] == []
    assert client.delete("/api/whatsapp/connect", params={"id": conn["id"]}, headers=headers).status_code == 404


def test_phone_number_id_cannot_be_taken_over(client, signup, connect):
    owner = signup(email="owner@example.com")
    connect(owner)
    intruder = signup(email="intruder@example.com")
    r = client.post(
        "/api/whatsapp/connect", json={"phoneNumberId": "1000", "wabaId": "waba-x"}, headers=intruder
    )
    assert r.status_code == 403
    assert client.get("/api/whatsapp/connect", headers=intruder).json()["connections"] == []


def test_send_message_logs_outbound(client, signup, connect, messenger):
    headers = signup()
    conn = connect(headers)
    r = client.post(
        "/api/whatsapp/send",
        json={"connectionId": conn["id"], "to": "+34 600 111 222", "message": "Hola Ana"},
        headers=headers,
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] is True
    assert body["messageId"] == "wamid.out.1"
    assert body["data"]["messages"][0]["id"] == "wamid.out.1"

    msgs = client.get("/api/whatsapp/send", params={"connectionId": conn["id"]}, headers=headers).json()["messages"]
    assert len(msgs) == 1
    m = msgs[0]
    assert (m["direction"], m["fromNumber"], m["toNumber"], m["content"], m["status"]) == (
        "outbound",
        "15550001",
        "34600111222",
        "Hola Ana",
        "sent",
    )


def test_send_message_validation(client, signup, connect):
    headers = signup()
    conn = connect(headers, access_token="")
    assert client.post("/api/whatsapp/send", json={"to": "1", "message": "x"}, headers=headers).status_code == 400
    r = client.post(
        "/api/whatsapp/send", json={"connectionId": "ghost", "to": "1", "message": "x"}, headers=headers
    )
    assert r.status_code == 404
    r = client.post(
        "/api/whatsapp/send", json={"connectionId": conn["id"], "to": "1", "message": "x"}, headers=headers
    )
    assert r.status_code == 400
    assert r.json()["detail"] == "Connection has no access token"


@pytest.mark.parametrize("upstream,expected", [(400, 400), (404, 404), (429, 429), (401, 502), (500, 502)])
def test_upstream_errors_are_mapped(client, signup, connect, messenger, upstream_error, upstream, expected):
    headers = signup()
    conn = connect(headers)
    messenger.error = upstream_error(upstream, "Graph says no")
    r = client.post(
        "/api/whatsapp/send", json={"connectionId": conn["id"], "to": "1", "message": "x"}, headers=headers
    )
    assert r.status_code == expected
    assert r.json()["detail"] == "Graph says no"
    msgs = client.get("/api/whatsapp/send", params={"connectionId": conn["id"]}, headers=headers).json()["messages"]
    assert msgs == []


def test_list_messages_requires_owned_connection(client, signup, connect):
    headers = signup()
    conn = connect(headers)
    assert client.get("/api/whatsapp/send", headers=headers).status_code == 400
    other = signup(email="other@example.com")
    r = client.get("/api/whatsapp/send", params={"connectionId": conn["id"]}, headers=other)
    assert r.status_code == 404
    r = client.get("/api/whatsapp/send", params={"connectionId": conn["id"], "limit": 0}, headers=headers)
    assert r.status_code == 422


def test_list_messages_paginates_newest_first(client, signup, connect, db_manager):
    headers = signup()
    conn = connect(headers)

    async def seed():
        for i in range(5):
            await db_manager.create_message(
                connection_id=conn["id"],
                direction="inbound",
                from_number="34600111222",
                to_number="15550001",
                content=f"m{i}",
                status="received",
                created_at=f"2024-01-0{i + 1}T10:00:00.000+00:00",
            )

    asyncio.run(seed())
    page = client.get(
        "/api/whatsapp/send", params={"connectionId": conn["id"], "limit": 2, "offset": 1}, headers=headers
    ).json()["messages"]
    assert [m["content"] for m in page] == ["m3", "m2"]


def test_export_conversations(client, signup, connect, db_manager):
    headers = signup()
    conn = connect(headers)

    async def seed():
        await db_manager.create_message(
            connection_id=conn["id"],
            direction="inbound",
            from_number="34600111222",
            to_number="15550001",
            content='Dijo "hola", luego se fue',
            status="received",
            created_at="2024-05-01T09:30:00.000+00:00",
        )
        await db_manager.create_message(
            connection_id=conn["id"],
            direction="outbound",
            from_number="15550001",
            to_number="34600111222",
            content="Respuesta",
            status="read",
            created_at="2024-05-03T18:00:00.000+00:00",
        )

    asyncio.run(seed())

    r = client.get("/api/export/conversations", headers=headers)
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    assert 'filename="conversations_' in r.headers["content-disposition"]
    lines = r.text.split("\n")
    assert lines[0] == "Date,Time,From,To,Type,Content,Status"
    assert lines[1] == '01/05/2024,09:30:00,34600111222,15550001,text,"Dijo ""hola"", luego se fue",received'
    assert lines[2] == '03/05/2024,18:00:00,15550001,34600111222,text,"Respuesta",read'

    r = client.get(
        "/api/export/conversations",
        params={"format": "json", "startDate": "2024-05-01", "endDate": "2024-05-01"},
        headers=headers,
    )
    body = r.json()
    assert body["totalMessages"] == 1
    assert body["messages"][0] == {
        "date": "01/05/2024 09:30:00",
        "from": "34600111222",
        "to": "15550001",
        "type": "text",
        "content": 'Dijo "hola", luego se fue',
        "status": "received",
    }
    assert body["exportedAt"]

    r = client.get(
        "/api/export/conversations",
        params={"format": "json", "connectionId": "ghost"},
        headers=headers,
    )
    assert r.json()["totalMessages"] == 0
    assert client.get("/api/export/conversations", params={"format": "xml"}, headers=headers).status_code == 400
    assert client.get("/api/export/conversations", params={"startDate": "ayer"}, headers=headers).status_code == 400


def test_build_message_payload():
    assert build_message_payload("+34 600-111-222", "hola") == {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": "34600111222",
        "type": "text",
        "text": {"body": "hola"},
    }
    media = build_message_payload("34600111222", {"link": "https://x/y.pdf"}, "document")
    assert media["type"] == "document"
    assert media["document"] == {"link": "https://x/y.pdf"}


def test_messenger_posts_to_graph_api():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"messages": [{"id": "wamid.abc"}]})

    messenger = WhatsAppMessenger(api_version="v18.0", base_url="https://graph.test", transport=httpx.MockTransport(handler))
    result = asyncio.run(
        messenger.send_message(phone_number_id="1000", access_token="EAAx", to="34600111222", message="hola")
    )
    assert result == {"messages": [{"id": "wamid.abc"}]}
    assert seen["url"] == "https://graph.test/v18.0/1000/messages"
    assert seen["auth"] == "Bearer EAAx"
    assert seen["body"]["text"] == {"body": "hola"}


def test_messenger_raises_with_graph_error_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": "(#131030) Recipient not in allowed list"}})

    messenger = WhatsAppMessenger(base_url="https://graph.test", transport=httpx.MockTransport(handler))
    with pytest.raises(WhatsAppAPIError) as info:
        asyncio.run(messenger.send_message(phone_number_id="1", access_token="t", to="2", message="x"))
    assert info.value.status_code == 400
    assert info.value.message == "(#131030) Recipient not in allowed list"
