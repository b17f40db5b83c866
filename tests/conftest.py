import asyncio
import os
import tempfile

import pytest

# Keep tests hermetic: SQLite only, no Redis, webhooks processed inline, no background loops.
os.environ.pop("DATABASE_URL", None)
os.environ.pop("FB_APP_SECRET", None)
os.environ["REQUIRE_POSTGRES"] = "0"
os.environ["DB_PATH"] = os.path.join(tempfile.mkdtemp(prefix="heyhey-test-"), "heyhey.db")
os.environ["REDIS_URL"] = ""
os.environ["WEBHOOK_WORKERS"] = "0"
os.environ["SCHEDULER_ENABLED"] = "0"
os.environ["OPENAI_API_KEY"] = ""
os.environ["META_APP_SECRET"] = ""
os.environ["SMTP_HOST"] = ""
os.environ["ADMIN_EMAIL"] = ""
os.environ["ADMIN_PASSWORD"] = ""
os.environ.setdefault("AUTH_SECRET", "test-secret")

from heyhey import main
from heyhey.llm import Completion
from heyhey.whatsapp import WhatsAppAPIError


class FakeMessenger:
    """Stands in for the Graph API; records every send."""

    def __init__(self):
        self.sent = []
        self.error = None

    async def send_message(self, *, phone_number_id, access_token, to, message, message_type="text"):
        if self.error is not None:
            raise self.error
        self.sent.append(
            {
                "phone_number_id": phone_number_id,
                "access_token": access_token,
                "to": to,
                "message": message,
                "message_type": message_type,
            }
        )
        return {"messaging_product": "whatsapp", "messages": [{"id": f"wamid.out.{len(self.sent)}"}]}


class FakeLLM:
    def __init__(self, answer="Hola desde la IA", configured=True):
        self.answer = answer
        self.configured = configured
        self.calls = []

    async def complete(self, system_prompt, messages):
        self.calls.append((system_prompt, messages))
        return Completion(text=self.answer, usage={"total_tokens": 12})

    async def reply(self, system_prompt, user_message):
        self.calls.append((system_prompt, [{"role": "user", "content": user_message}]))
        return self.answer or None


@pytest.fixture
def db_manager(tmp_path, monkeypatch):
    dm = main.DatabaseManager(str(tmp_path / "db.sqlite"))
    asyncio.run(dm.init_db())
    monkeypatch.setattr(main, "db_manager", dm)
    monkeypatch.setattr(main.api_runtime, "db_manager", dm)
    monkeypatch.setattr(main.message_processor, "db_manager", dm)
    monkeypatch.setattr(main.chatbot_engine, "db_manager", dm)
    monkeypatch.setattr(main.dispatcher, "db_manager", dm)
    return dm


@pytest.fixture
def messenger(monkeypatch):
    fake = FakeMessenger()
    monkeypatch.setattr(main.message_processor, "whatsapp_messenger", fake)
    return fake


@pytest.fixture
def llm(monkeypatch):
    fake = FakeLLM()
    monkeypatch.setattr(main.chatbot_engine, "llm", fake)
    monkeypatch.setattr(main.api_runtime, "llm", fake)
    return fake


@pytest.fixture
def client(db_manager, messenger):
    from fastapi.testclient import TestClient
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def signup(client):
    """Register + log in a user; returns Authorization headers for it."""
    def _signup(email="owner@example.com", password="secret123", name=None):
        r = client.post("/api/auth/register", json={"email": email, "password": password, "name": name})
        assert r.status_code == 201, r.text
        r = client.post("/api/auth/login", json={"email": email, "password": password})
        assert r.status_code == 200, r.text
        # Tests authenticate with the header only, so several users can share one client.
        client.cookies.clear()
        return {"Authorization": f"Bearer {r.json()['access_token']}"}
    return _signup


@pytest.fixture
def connect(client):
    def _connect(headers, phone_number_id="1000", waba_id="waba-1", access_token="EAAtoken", phone="15550001"):
        r = client.post(
            "/api/whatsapp/connect",
            json={
                "phoneNumber": phone,
                "phoneNumberId": phone_number_id,
                "wabaId": waba_id,
                "businessName": "Acme",
                "accessToken": access_token,
            },
            headers=headers,
        )
        assert r.status_code == 200, r.text
        return r.json()["connection"]
    return _connect


@pytest.fixture
def upstream_error():
    def _make(status=400, message="Invalid parameter"):
        return WhatsAppAPIError(status, message, {"error": {"message": message}})
    return _make
