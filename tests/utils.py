def webhook_envelope(changes, waba_id="waba-1"):
    return {"object": "whatsapp_business_account", "entry": [{"id": waba_id, "changes": changes}]}


def text_message_payload(
    waba_id="waba-1",
    phone_number_id="1000",
    sender="34600111222",
    body="hola",
    wa_id="wamid.in.1",
    name="Ana",
):
    return webhook_envelope(
        [
            {
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "metadata": {"phone_number_id": phone_number_id},
                    "contacts": [{"wa_id": sender, "profile": {"name": name}}],
                    "messages": [
                        {
                            "from": sender,
                            "id": wa_id,
                            "timestamp": "1700000000",
                            "type": "text",
                            "text": {"body": body},
                        }
                    ],
                },
            }
        ],
        waba_id=waba_id,
    )


def status_payload(wa_id, status, waba_id="waba-1", phone_number_id="1000"):
    return webhook_envelope(
        [
            {
                "field": "messages",
                "value": {
                    "metadata": {"phone_number_id": phone_number_id},
                    "statuses": [{"id": wa_id, "status": status, "timestamp": "1700000100"}],
                },
            }
        ],
        waba_id=waba_id,
    )


async def seed_user_with_connection(dm, email="bot@example.com", waba_id="waba-1", phone_number_id="1000"):
    user = await dm.create_user(email, "x", "Bot Owner")
    conn = await dm.upsert_connection(
        user["id"],
        phone_number="15550001",
        phone_number_id=phone_number_id,
        waba_id=waba_id,
        business_name="Acme",
        access_token="EAAtoken",
    )
    return user, conn
