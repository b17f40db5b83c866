from heyhey.api.quick_replies import normalize_shortcut


def test_normalize_shortcut():
    assert normalize_shortcut("hola") == "/hola"
    assert normalize_shortcut(" /hola ") == "/hola"


def test_quick_reply_crud(client, signup):
    headers = signup()
    r = client.post(
        "/api/quick-replies",
        json={"shortcut": "gracias", "title": "Gracias", "content": "Gracias por escribirnos!"},
        headers=headers,
    )
    assert r.status_code == 201
    reply = r.json()["quickReply"]
    assert reply["shortcut"] == "/gracias"
    assert reply["category"] == "general"

    r = client.post(
        "/api/quick-replies",
        json={"shortcut": "/gracias", "title": "Otra", "content": "x"},
        headers=headers,
    )
    assert r.status_code == 409
    assert client.post("/api/quick-replies", json={"shortcut": "x", "title": "x"}, headers=headers).status_code == 400

    other = client.post(
        "/api/quick-replies",
        json={"shortcut": "/adios", "title": "Adios", "content": "Hasta pronto", "category": "cierre"},
        headers=headers,
    ).json()["quickReply"]

    listed = client.get("/api/quick-replies", headers=headers).json()["quickReplies"]
    assert [q["shortcut"] for q in listed] == ["/adios", "/gracias"]

    r = client.put("/api/quick-replies", json={"id": reply["id"], "content": "Mil gracias"}, headers=headers)
    assert r.status_code == 200
    assert r.json()["quickReply"]["content"] == "Mil gracias"
    assert r.json()["quickReply"]["shortcut"] == "/gracias"

    # Renaming onto another reply's shortcut is a conflict, keeping its own is not
    assert client.put("/api/quick-replies", json={"id": reply["id"], "shortcut": "adios"}, headers=headers).status_code == 409
    assert client.put("/api/quick-replies", json={"id": reply["id"], "shortcut": "gracias"}, headers=headers).status_code == 200
    r = client.put("/api/quick-replies", json={"id": other["id"], "shortcut": "chao"}, headers=headers)
    assert r.json()["quickReply"]["shortcut"] == "/chao"

    assert client.put("/api/quick-replies", json={"content": "x"}, headers=headers).status_code == 400
    assert client.put("/api/quick-replies", json={"id": "ghost", "content": "x"}, headers=headers).status_code == 404

    assert client.delete("/api/quick-replies", params={"id": reply["id"]}, headers=headers).json() == {"success": True}
    assert client.delete("/api/quick-replies", params={"id": reply["id"]}, headers=headers).status_code == 404


def test_quick_replies_are_per_user(client, signup):
    ana = signup(email="ana@example.com")
    bea = signup(email="bea@example.com")
    payload = {"shortcut": "/hola", "title": "Hola", "content": "Hola!"}
    reply = client.post("/api/quick-replies", json=payload, headers=ana).json()["quickReply"]
    # Same shortcut is free for another user
    assert client.post("/api/quick-replies", json=payload, headers=bea).status_code == 201
    assert client.put("/api/quick-replies", json={"id": reply["id"], "title": "x"}, headers=bea).status_code == 404
    assert client.delete("/api/quick-replies", params={"id": reply["id"]}, headers=bea).status_code == 404


def test_template_crud(client, signup):
    headers = signup()
    r = client.post(
        "/api/templates",
        json={"name": "Pedido listo", "content": "Hola {{1}}, tu pedido {{2}} esta listo", "variables": ["nombre", "pedido"]},
        headers=headers,
    )
    assert r.status_code == 200
    template = r.json()["template"]
    assert template["variables"] == ["nombre", "pedido"]
    assert template["category"] == "general"

    listed = client.get("/api/templates", headers=headers).json()["templates"]
    assert [t["name"] for t in listed] == ["Pedido listo"]
    assert listed[0]["variables"] == ["nombre", "pedido"]

    assert client.post("/api/templates", json={"name": "x"}, headers=headers).status_code == 400
    assert client.post("/api/templates", json={"content": "x"}, headers=headers).status_code == 400
    assert client.post(
        "/api/templates", json={"name": "x", "content": "y", "variables": "nombre"}, headers=headers
    ).status_code == 400

    other = signup(email="other@example.com")
    assert client.get("/api/templates", headers=other).json()["templates"] == []
    assert client.delete("/api/templates", params={"id": template["id"]}, headers=other).status_code == 404

    assert client.delete("/api/templates", params={"id": template["id"]}, headers=headers).json() == {"success": True}
    assert client.get("/api/templates", headers=headers).json()["templates"] == []
