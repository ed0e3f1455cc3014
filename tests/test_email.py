import smtplib
import ssl
from datetime import timedelta

import pytest

from tokenkeep.service.email import EmailService, describe_ttl


class FakeSMTP:
    """Records the SMTP conversation; ``error`` is raised from ``sendmail``."""

    instances = []
    error = None

    def __init__(self, host, port, timeout=None, context=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def close(self):
        pass

    def sendmail(self, from_addr, to_addr, message):
        if FakeSMTP.error is not None:
            raise FakeSMTP.error
        self.sent.append((from_addr, to_addr, message))


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.error = None
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(smtplib, "SMTP_SSL", FakeSMTP)
    return FakeSMTP


@pytest.fixture
def service():
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer",
        smtp_password="hunter22",
        from_email="noreply@example.com",
        base_url="https://app.example.com/",
    )


def test_unconfigured_service_logs_instead_of_sending(fake_smtp):
    service = EmailService()

    assert not service.is_configured
    assert service.send_login_otp("ada@example.com", "123456") is True
    assert fake_smtp.instances == []


def test_verification_link_uses_base_url(fake_smtp, service):
    assert service.send_email_verification("ada@example.com", "tok-abc")

    conn = fake_smtp.instances[0]
    assert conn.started_tls
    assert conn.logged_in == ("mailer", "hunter22")
    from_addr, to_addr, message = conn.sent[0]
    assert (from_addr, to_addr) == ("noreply@example.com", "ada@example.com")
    assert "https://app.example.com/verify-email?token=tok-abc" in message


def test_reset_link_path(fake_smtp, service):
    assert service.send_password_reset("ada@example.com", "tok-xyz")
    assert "/reset-password?token=tok-xyz" in fake_smtp.instances[0].sent[0][2]


def test_code_body_has_no_markup_in_text_part(service):
    html_body, text_body = service._render("Title", "Intro", "<123456>", "Soon")

    assert "&lt;123456&gt;" in html_body
    assert "<123456>" in text_body
    assert "<strong>" not in text_body


def test_implicit_tls_skips_starttls(fake_smtp):
    service = EmailService(
        smtp_host="smtp.example.com",
        smtp_port=465,
        smtp_use_tls=False,
        from_email="noreply@example.com",
    )

    assert service.send_verification_code("ada@example.com", "654321")
    assert not fake_smtp.instances[0].started_tls
    assert fake_smtp.instances[0].logged_in is None


@pytest.mark.parametrize(
    "error",
    [
        smtplib.SMTPAuthenticationError(535, b"bad credentials"),
        smtplib.SMTPRecipientsRefused({"ada@example.com": (550, b"no such user")}),
        smtplib.SMTPServerDisconnected("gone"),
        ssl.SSLError("handshake failed"),
        ConnectionRefusedError("refused"),
        TimeoutError("timed out"),
    ],
)
def test_delivery_failures_return_false(fake_smtp, service, error):
    fake_smtp.error = error
    assert service.send_login_otp("ada@example.com", "123456") is False


def test_redact_email(service):
    assert service._redact_email("ada@example.com") == "ad***@example.com"
    assert service._redact_email("nonsense") == "redacted"


@pytest.mark.parametrize(
    "ttl, expected",
    [
        (timedelta(hours=1), "1 hour"),
        (timedelta(minutes=15), "15 minutes"),
        (timedelta(seconds=120), "2 minutes"),
        (timedelta(seconds=90), "90 seconds"),
        (timedelta(days=2), "2 days"),
    ],
)
def test_describe_ttl(ttl, expected):
    assert describe_ttl(ttl) == expected


def test_expiry_copy_uses_configured_lifetime(fake_smtp):
    service = EmailService(
        smtp_host="smtp.example.com",
        from_email="noreply@example.com",
        reset_link_ttl=timedelta(minutes=30),
        login_code_ttl=timedelta(seconds=90),
    )

    assert service.send_password_reset("ada@example.com", "tok-xyz")
    assert service.send_login_otp("ada@example.com", "123456")

    reset_message = fake_smtp.instances[0].sent[0][2]
    otp_message = fake_smtp.instances[1].sent[0][2]
    assert "expire in 30 minutes" in reset_message
    assert "15 minutes" not in reset_message
    assert "expire in 90 seconds" in otp_message
