import smtplib

from portalauth.service import email as email_module
from portalauth.service.email import EmailService


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port
        self.sent = []
        self.logged_in = None
        self.tls = False
        FakeSMTP.instances.append(self)

    def starttls(self, context=None):
        self.tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def send_message(self, msg):
        self.sent.append(msg)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class RefusingSMTP(FakeSMTP):
    def send_message(self, msg):
        raise smtplib.SMTPRecipientsRefused({"x@y.example": (550, b"no")})


def _service(**overrides):
    settings = dict(
        smtp_host="smtp.example",
        smtp_port=587,
        smtp_user="mailer",
        smtp_password="pw",
        from_email="noreply@portal.example",
        base_url="https://app.example/",
        portal_base_url="https://portal.example",
    )
    settings.update(overrides)
    return EmailService(**settings)


def test_unconfigured_service_logs_instead_of_sending(monkeypatch):
    monkeypatch.setattr(email_module.smtplib, "SMTP", None)
    service = EmailService()

    assert service.is_configured is False
    assert service.send_invitation(
        "new@acme.example", "tok", tenant_name="Acme", role="member", expires_in_hours=168
    )


def test_staff_invitation_links_to_accept_endpoint(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)

    ok = _service().send_invitation(
        "new@acme.example", "tok123", tenant_name="Acme <GmbH>", role="admin", expires_in_hours=168
    )

    assert ok is True
    server = FakeSMTP.instances[0]
    assert server.tls is True
    assert server.logged_in == ("mailer", "pw")
    msg = server.sent[0]
    assert msg["To"] == "new@acme.example"
    assert "noreply@portal.example" in msg["From"]
    text = msg.get_body(preferencelist=("plain",)).get_content()
    html_part = msg.get_body(preferencelist=("html",)).get_content()
    assert "https://app.example/invitations/tok123/accept" in text
    assert "168 hours" in text
    assert "Acme &lt;GmbH&gt;" in html_part


def test_client_invitation_links_to_portal(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)

    _service().send_client_invitation(
        "c@customer.example", "tok9", tenant_name="Acme", client_name="Carla", expires_in_hours=24
    )

    text = FakeSMTP.instances[0].sent[0].get_body(preferencelist=("plain",)).get_content()
    assert "https://portal.example/activate/tok9" in text


def test_delivery_failure_returns_false(monkeypatch):
    monkeypatch.setattr(email_module.smtplib, "SMTP", RefusingSMTP)

    assert _service().send_invitation(
        "x@y.example", "tok", tenant_name="Acme", role="viewer", expires_in_hours=1
    ) is False


def test_connection_error_returns_false(monkeypatch):
    def refuse(*args, **kwargs):
        raise ConnectionRefusedError("no route")

    monkeypatch.setattr(email_module.smtplib, "SMTP", refuse)

    assert _service().send_invitation(
        "x@y.example", "tok", tenant_name="Acme", role="viewer", expires_in_hours=1
    ) is False
