import asyncio

from fastapi.testclient import TestClient

from turnero.config import AppSettings, WhatsAppSettings
from turnero.deps import build_services
from turnero.main import create_app
from turnero.models import ConversationState
from turnero.routers.whatsapp import compute_twilio_signature
from turnero.services import messages
from turnero.services.conversation_store import InMemoryConversationStore
from turnero.services.reminders import InMemoryReminderScheduler
from turnero.services.transport import StubTransport

from .conftest import CUSTOMER_PHONE

FORM = {
    "From": "whatsapp:+5491123456789",
    "To": "whatsapp:+5491100000000",
    "Body": "hola",
}


def _client(repo, settings: AppSettings | None = None):
    services = build_services(
        settings or AppSettings(repository_backend="memory", start_reminder_worker=False),
        repository=repo,
        store=InMemoryConversationStore(),
        transport=StubTransport(),
        scheduler=InMemoryReminderScheduler(),
    )
    return TestClient(create_app(services)), services


def test_webhook_replies_with_empty_twiml(repo) -> None:
    client, services = _client(repo)
    with client:
        resp = client.post("/v1/whatsapp/webhook", data=FORM)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/xml")
    assert resp.text == "<Response></Response>"
    assert services.transport.sent_messages[-1].to == CUSTOMER_PHONE


def test_webhook_drives_the_conversation(repo) -> None:
    client, services = _client(repo)
    with client:
        client.post("/v1/whatsapp/webhook", data={**FORM, "Body": "turno"})
        client.post("/v1/whatsapp/webhook", data={**FORM, "Body": "999"})

    replies = [m.body for m in services.transport.sent_messages]
    assert "Elige un servicio" in replies[0]
    assert replies[1] == messages.INVALID_SERVICE


def test_webhook_for_unknown_business_still_returns_200(repo) -> None:
    client, services = _client(repo)
    with client:
        resp = client.post(
            "/v1/whatsapp/webhook", data={**FORM, "To": "whatsapp:+5491199999999"}
        )

    assert resp.status_code == 200
    assert resp.text == "<Response></Response>"
    assert services.transport.sent_messages == []


def test_webhook_accepts_missing_body(repo) -> None:
    client, services = _client(repo)
    form = {k: v for k, v in FORM.items() if k != "Body"}
    with client:
        resp = client.post("/v1/whatsapp/webhook", data=form)
    assert resp.status_code == 200


def test_signature_verification_rejects_bad_signature(repo) -> None:
    settings = AppSettings(
        repository_backend="memory",
        start_reminder_worker=False,
        whatsapp=WhatsAppSettings(verify_twilio_signatures=True, twilio_auth_token="secret"),
    )
    client, services = _client(repo, settings)
    with client:
        missing = client.post("/v1/whatsapp/webhook", data=FORM)
        wrong = client.post(
            "/v1/whatsapp/webhook", data=FORM, headers={"X-Twilio-Signature": "bogus"}
        )
        signature = compute_twilio_signature(
            "secret", "http://testserver/v1/whatsapp/webhook", FORM
        )
        ok = client.post(
            "/v1/whatsapp/webhook", data=FORM, headers={"X-Twilio-Signature": signature}
        )

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert ok.status_code == 200
    assert len(services.transport.sent_messages) == 1


def test_conversation_state_is_shared_across_requests(repo) -> None:
    client, services = _client(repo)
    with client:
        client.post("/v1/whatsapp/webhook", data={**FORM, "Body": "turno"})

    context = asyncio.run(services.store.get(CUSTOMER_PHONE))
    assert context.state == ConversationState.AWAITING_SERVICE
