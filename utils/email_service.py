"""SMTP-backed delivery of one-time verification codes."""
import smtplib
import ssl
from abc import ABC, abstractmethod
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import List

from flask import current_app

from utils.mail_format import format_otp_markdown, mask_email, markdown_to_email_html, markdown_to_plaintext


class EmailDeliveryError(Exception):
    """Raised when email dispatch fails."""


class CodeSender(ABC):
    """Delivers a one-time code to an email address; raises EmailDeliveryError on failure."""

    @abstractmethod
    def send_code(self, email: str, code: str, purpose: str) -> None:
        ...


def _resolve_sender() -> str:
    return current_app.config.get("MAIL_DEFAULT_SENDER") or ""


def _dispatch_email(subject: str, text_body: str, html_body: str, sender: str, recipients: List[str]) -> None:
    if not recipients:
        raise EmailDeliveryError("No recipients resolved for email dispatch")

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = ", ".join(recipients)
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = make_msgid()
    msg.set_content(text_body or markdown_to_plaintext(html_body))
    msg.add_alternative(html_body, subtype="html")

    host = current_app.config.get("MAIL_SERVER")
    port = int(current_app.config.get("MAIL_PORT", 25))
    username = current_app.config.get("MAIL_USERNAME")
    password = current_app.config.get("MAIL_PASSWORD")
    use_tls = bool(current_app.config.get("MAIL_USE_TLS"))
    use_ssl = bool(current_app.config.get("MAIL_USE_SSL"))

    if not host:
        raise EmailDeliveryError("MAIL_SERVER is not configured")

    try:
        if use_ssl:
            context = ssl.create_default_context()
            with smtplib.SMTP_SSL(host, port, context=context) as server:
                if username and password:
                    server.login(username, password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(host, port) as server:
                server.ehlo()
                if use_tls:
                    server.starttls(context=ssl.create_default_context())
                if username and password:
                    server.login(username, password)
                server.send_message(msg)
    except Exception as exc:  # pragma: no cover - external I/O
        raise EmailDeliveryError(str(exc)) from exc


class SmtpCodeSender(CodeSender):
    def send_code(self, email: str, code: str, purpose: str) -> None:
        ttl = int(current_app.config.get("OTP_TTL_MINUTES", 10))
        markdown_body = format_otp_markdown(code, purpose, ttl)
        subject = "Your Ward Grievance Portal verification code"
        _dispatch_email(
            subject,
            markdown_to_plaintext(markdown_body),
            markdown_to_email_html(markdown_body),
            _resolve_sender(),
            [email],
        )
        current_app.logger.info(
            "Verification code emailed",
            extra={"recipient": mask_email(email), "purpose": purpose},
        )


class LogCodeSender(CodeSender):
    """Development backend: writes the code to the application log instead of sending mail."""

    def send_code(self, email: str, code: str, purpose: str) -> None:
        current_app.logger.warning(
            "Verification code for %s (%s): %s",
            mask_email(email),
            purpose,
            code,
        )


def build_code_sender(backend: str) -> CodeSender:
    backend = (backend or "smtp").lower()
    if backend == "log":
        return LogCodeSender()
    if backend == "smtp":
        return SmtpCodeSender()
    raise ValueError(f"Unknown OTP delivery backend: {backend}")
