from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .settings import settings


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - CDA_ENABLE_EMAIL=true
      - CDA_SMTP_HOST / CDA_SMTP_PORT
      - CDA_SMTP_USER / CDA_SMTP_PASSWORD
      - CDA_EMAIL_FROM / CDA_EMAIL_TO
    """
    if not settings.enable_email:
        return False
    if not all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    ):
        return False

    msg = MIMEMultipart()
    msg["From"] = settings.email_from
    msg["To"] = settings.email_to
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))

    try:
        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=15)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError):
        return False


def alert_deployment(result: str, request_id: str, detail: str) -> bool:
    if result == "success":
        return False
    subject = f"[cda] deployment {request_id}: {result.upper()}"
    body = f"Request: {request_id}\nResult: {result}\nDetail: {detail}"
    return send_email(subject, body)


def alert_fatal(message: str) -> bool:
    subject = "[cda] FATAL: deployment agent stopped"
    body = f"{message}\n\nThe agent stopped processing deployments. Manual intervention is required."
    return send_email(subject, body)
