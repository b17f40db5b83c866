import hashlib
import hmac
import logging
from datetime import datetime, timezone

from heyhey.auth import generate_api_key, mask_api_key
from heyhey.db import parse_iso, to_iso
from heyhey.exports import admin_table, conversations_csv, export_filename, to_csv
from heyhey.observability.context import get_request_id, get_user_id, job_context
from heyhey.observability.logging import _ContextFilter
from heyhey.processor import inbound_content
from heyhey.serializers import camelize, pick
from heyhey.webhook.router import signature_matches


def test_conversations_csv_quotes_content():
    csv_text = conversations_csv(
        [
            {
                "created_at": "2024-02-10T23:05:09.000+00:00",
                "from_number": "1",
                "to_number": "2",
                "message_type": "text",
                "content": 'a "b", c',
                "status": "sent",
            },
            {"created_at": None, "content": None},
        ]
    )
    lines = csv_text.split("\n")
    assert lines[1] == '10/02/2024,23:05:09,1,2,text,"a ""b"", c",sent'
    assert lines[2] == ',,,,,"",'


def test_admin_table_formats_columns():
    headers, body = admin_table(
        "webhooks",
        [
            {
                "id": "w1",
                "event_type": "messages",
                "user_email": None,
                "connection_phone": "155",
                "processed": 1,
                "payload": {"a": 1},
                "created_at": "2024-01-01",
            }
        ],
    )
    assert headers == ["ID", "Event", "User", "Phone", "Processed", "Payload", "Date"]
    assert body == [["w1", "messages", "", "155", "Yes", '{"a": 1}', "2024-01-01"]]
    assert to_csv(headers, body).splitlines()[1] == 'w1,messages,,155,Yes,"{""a"": 1}",2024-01-01'


def test_export_filename():
    assert export_filename("users", "xlsx", datetime(2024, 7, 9, tzinfo=timezone.utc)) == "users_2024-07-09.xlsx"


def test_mask_api_key():
    key = generate_api_key()
    assert key.startswith("hh_")
    masked = mask_api_key(key)
    assert masked == f"{key[:10]}...{key[-4:]}"
    assert mask_api_key("hh_short") == "hh_..."


def test_signature_matches():
    body = b'{"object":"whatsapp_business_account"}'
    digest = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
    assert signature_matches("s3cret", body, f"sha256={digest}")
    assert not signature_matches("s3cret", body + b" ", f"sha256={digest}")
    assert not signature_matches("other", body, f"sha256={digest}")
    assert not signature_matches("s3cret", body, "")
    assert not signature_matches("s3cret", body, "sha256=")


def test_iso_helpers_normalize_to_utc():
    assert to_iso(datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02T03:04:05.000+00:00"
    assert parse_iso("2024-01-02T05:04:05+02:00") == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert parse_iso("2024-01-02T03:04:05Z") == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert parse_iso("not a date") is None
    assert parse_iso("") is None


def test_camelize_hides_secrets_and_converts_flags():
    row = {
        "id": "c1",
        "phone_number_id": "1000",
        "access_token": "EAA",
        "password_hash": "x",
        "is_active": 0,
        "context": {"user_message": "hola"},
        "nodes": [{"node_type": "message", "next_node_id": None}],
    }
    assert camelize(row) == {
        "id": "c1",
        "phoneNumberId": "1000",
        "isActive": False,
        "context": {"user_message": "hola"},
        "nodes": [{"nodeType": "message", "nextNodeId": None}],
    }
    assert camelize(None) is None
    assert pick({"triggerType": "all", "other": 1}, "triggerType", "isActive") == {"trigger_type": "all"}


def test_inbound_content_by_type():
    assert inbound_content({"type": "text", "text": {"body": "hola"}}) == ("text", "hola")
    assert inbound_content({"type": "button", "button": {"text": "Si"}}) == ("button", "Si")
    assert inbound_content(
        {"type": "interactive", "interactive": {"list_reply": {"title": "Opcion 2"}}}
    ) == ("interactive", "Opcion 2")
    assert inbound_content({"type": "audio", "audio": {"id": "a"}}) == ("audio", "[audio]")
    assert inbound_content({"type": "document", "document": {"caption": "factura"}}) == ("document", "[document] factura")


def test_job_context_binds_ids_for_log_records():
    records = []

    class _Collect(logging.Handler):
        def emit(self, record):
            records.append(record)

    logger = logging.getLogger("heyhey.tests.context")
    handler = _Collect()
    handler.addFilter(_ContextFilter(request_id_getter=get_request_id, user_getter=get_user_id))
    logger.addHandler(handler)
    try:
        with job_context("sched", "user-1") as rid:
            assert rid.startswith("sched-")
            logger.warning("dispatching")
        logger.warning("outside")
    finally:
        logger.removeHandler(handler)

    assert (records[0].request_id, records[0].user_id) == (rid, "user-1")
    assert (records[1].request_id, records[1].user_id) == (None, None)
    assert get_request_id() is None
