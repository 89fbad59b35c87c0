import smtplib

import pytest

from cda import alerts
from cda.settings import Settings


class _FakeSMTP:
    sent = []
    fail = False

    def __init__(self, host, port, timeout=None):
        if _FakeSMTP.fail:
            raise OSError("connection refused")
        self.host, self.port = host, port

    def starttls(self):
        pass

    def login(self, user, password):
        pass

    def sendmail(self, sender, recipients, message):
        _FakeSMTP.sent.append((sender, recipients, message))

    def quit(self):
        pass


@pytest.fixture
def smtp(monkeypatch):
    _FakeSMTP.sent = []
    _FakeSMTP.fail = False
    monkeypatch.setattr(smtplib, "SMTP", _FakeSMTP)
    monkeypatch.setattr(
        alerts,
        "settings",
        Settings(
            enable_email=True,
            smtp_user="agent",
            smtp_password="pw",
            email_from="cda@example.com",
            email_to="ops@example.com",
        ),
    )
    return _FakeSMTP


def test_disabled_by_default(monkeypatch):
    monkeypatch.setattr(alerts, "settings", Settings(enable_email=False))
    assert alerts.send_email("s", "b") is False


def test_rollback_is_mailed(smtp):
    assert alerts.alert_deployment("rolledBack", "abc123", "HealthCheckFailed: web timedOut") is True

    sender, recipients, message = smtp.sent[0]
    assert (sender, recipients) == ("cda@example.com", ["ops@example.com"])
    assert "deployment abc123: ROLLEDBACK" in message


def test_success_is_not_mailed(smtp):
    assert alerts.alert_deployment("success", "abc123", "") is False
    assert smtp.sent == []


def test_smtp_errors_do_not_propagate(smtp):
    smtp.fail = True
    assert alerts.alert_fatal("store is read-only") is False
