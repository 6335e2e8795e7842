from __future__ import annotations

import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Mapping

from jinja2 import Template

from ach_exporter.config import SmtpSettings
from ach_exporter.json_logger import JsonLogger, log_event

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT_TEMPLATE = "Net ACH Export {{ date }} ({{ mid_count }} MIDs)"
DEFAULT_BODY_TEMPLATE = "Attached is the Net ACH export for {{ start }} to {{ end }}."
XLSX_SUBTYPE = "vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@dataclass
class EmailResult:
    sent: bool
    recipients: list[str]
    skipped_reason: str | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "sent": self.sent,
            "recipients": self.recipients,
            "skipped_reason": self.skipped_reason,
            "error": self.error,
        }


def _render_template(raw: str, context: Mapping[str, Any]) -> str:
    try:
        return Template(raw).render(**context)
    except Exception:
        logger.exception("failed to render email template")
        return raw


def _attachment_type(path: Path) -> tuple[str, str]:
    if path.suffix.lower() == ".xlsx":
        return "application", XLSX_SUBTYPE
    if path.suffix.lower() == ".csv":
        return "text", "csv"
    return "application", "octet-stream"


def build_message(settings: SmtpSettings, attachment: Path, context: Mapping[str, Any]) -> EmailMessage:
    message = EmailMessage()
    message["Subject"] = _render_template(settings.subject_template or DEFAULT_SUBJECT_TEMPLATE, context)
    message["From"] = settings.sender or ""
    message["To"] = ", ".join(settings.recipients)
    message.set_content(_render_template(settings.body_template or DEFAULT_BODY_TEMPLATE, context))
    maintype, subtype = _attachment_type(attachment)
    message.add_attachment(
        attachment.read_bytes(),
        maintype=maintype,
        subtype=subtype,
        filename=attachment.name,
    )
    return message


def _deliver(settings: SmtpSettings, message: EmailMessage) -> None:
    if settings.secure:
        with smtplib.SMTP_SSL(settings.host, settings.port, context=ssl.create_default_context()) as client:
            if settings.username and settings.password:
                client.login(settings.username, settings.password)
            client.send_message(message, to_addrs=list(settings.recipients))
        return
    with smtplib.SMTP(settings.host, settings.port) as client:
        client.ehlo()
        if client.has_extn("starttls"):
            client.starttls(context=ssl.create_default_context())
            client.ehlo()
        if settings.username and settings.password:
            client.login(settings.username, settings.password)
        client.send_message(message, to_addrs=list(settings.recipients))


def send_report_email(
    settings: SmtpSettings,
    attachment: Path,
    context: Mapping[str, Any],
    *,
    json_logger: JsonLogger,
) -> EmailResult:
    """Email the export. Delivery problems are reported, never raised."""

    recipients = list(settings.recipients)
    skipped_reason: str | None = None
    if not settings.enabled:
        skipped_reason = "disabled"
    elif not recipients:
        skipped_reason = "no_recipients"
    elif not settings.host or not settings.sender:
        skipped_reason = "smtp_incomplete"
    elif not attachment.exists():
        skipped_reason = "attachment_missing"
    if skipped_reason:
        log_event(
            logger=json_logger,
            phase="email",
            status="warn",
            message="Email skipped",
            reason=skipped_reason,
        )
        return EmailResult(sent=False, recipients=recipients, skipped_reason=skipped_reason)

    try:
        _deliver(settings, build_message(settings, attachment, context))
    except Exception as exc:
        logger.exception("failed to send report email")
        log_event(
            logger=json_logger,
            phase="email",
            status="error",
            message="Email send failed",
            error=str(exc),
            host=settings.host,
            port=settings.port,
        )
        return EmailResult(sent=False, recipients=recipients, error=str(exc))

    log_event(
        logger=json_logger,
        phase="email",
        message="Email sent",
        recipients=recipients,
        attachment=str(attachment),
    )
    return EmailResult(sent=True, recipients=recipients)
