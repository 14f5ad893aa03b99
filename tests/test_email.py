import httpx
import pytest

from labbo.core import config
from labbo.services.email import EmailService


@pytest.fixture
def mock_service():
    return EmailService(provider="mock")


async def test_mock_provider_records_messages(mock_service):
    assert mock_service.is_configured
    assert await mock_service.send_welcome_email("student@campus.ac.id", "Student")
    message = mock_service.outbox[-1]
    assert message.to == "student@campus.ac.id"
    assert message.subject == "Welcome to the Lab Inventory System"


async def test_templates_escape_user_input(mock_service):
    await mock_service.send_registration_rejected_email("x@campus.ac.id", "<b>Eve</b>", "Use <your> campus email")
    body = mock_service.outbox[-1].html
    assert "&lt;b&gt;Eve&lt;/b&gt;" in body
    assert "<b>Eve</b>" not in body
    assert "Use &lt;your&gt; campus email" in body


async def test_verification_link_contains_token(mock_service):
    await mock_service.send_verification_email("x@campus.ac.id", "Student", "abc123token")
    assert f"{config.APP_URL}/verify-email?token=abc123token" in mock_service.outbox[-1].html


async def test_unconfigured_smtp_skips_sending(monkeypatch):
    monkeypatch.setattr(config, "SMTP_USERNAME", "")
    monkeypatch.setattr(config, "SMTP_PASSWORD", "")
    service = EmailService(provider="smtp")
    assert not service.is_configured
    assert await service.send_email("x@campus.ac.id", "Hello", "<p>Hi</p>") is False


async def test_http_provider_failure_is_reported_not_raised(monkeypatch):
    monkeypatch.setattr(config, "RESEND_API_KEY", "re_test_key")

    async def failing_post(self, url, **kwargs):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(httpx.AsyncClient, "post", failing_post)
    service = EmailService(provider="resend")
    assert service.is_configured
    assert await service.send_email("x@campus.ac.id", "Hello", "<p>Hi</p>") is False
    assert service.outbox == []
