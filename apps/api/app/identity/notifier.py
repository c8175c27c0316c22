from __future__ import annotations

import html
import logging
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from app.core.config import Settings, get_settings


logger = logging.getLogger("app.identity.notifier")


class NotifierError(Exception):
    """Raised when an outbound notification could not be delivered."""


class Notifier(Protocol):
    def send_activation_invite(self, email: str, display_name: str, token: str) -> None: ...

    def send_password_reset(self, email: str, display_name: str, token: str) -> None: ...


def build_app_link(base_url: str, path: str, token: str) -> str:
    normalized_base = base_url.rstrip("/")
    normalized_path = path if path.startswith("/") else f"/{path}"
    return f"{normalized_base}{normalized_path}?token={quote(token, safe='')}"


class LoggingNotifier:
    """Used when ``MAIL_PROVIDER=disabled``: records the attempt, sends nothing."""

    def send_activation_invite(self, email: str, display_name: str, token: str) -> None:
        logger.warning("notifier.skipped", extra={"notification": "activation", "outcome": "mail_disabled"})

    def send_password_reset(self, email: str, display_name: str, token: str) -> None:
        logger.warning("notifier.skipped", extra={"notification": "reset_password", "outcome": "mail_disabled"})


class ResendNotifier:
    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        if not settings.resend_api_key:
            raise NotifierError("RESEND_API_KEY is not configured")
        self._settings = settings
        self._client = client

    def send_activation_invite(self, email: str, display_name: str, token: str) -> None:
        link = build_app_link(self._settings.app_web_url, self._settings.app_activation_path, token)
        name = html.escape(display_name)
        self._send(
            notification="activation",
            to=email,
            subject="Activate your Handsell account",
            text="\n".join(
                [
                    f"Hello, {display_name}.",
                    "",
                    "An account was created for you on the Handsell portal.",
                    f"Activate it here: {link}",
                    "",
                    "If you do not recognize this sign-up, ignore this email.",
                ]
            ),
            html_body="".join(
                [
                    f"<p>Hello, {name}.</p>",
                    "<p>An account was created for you on the Handsell portal.</p>",
                    f'<p><a href="{link}">Activate your account</a></p>',
                    "<p>If you do not recognize this sign-up, ignore this email.</p>",
                ]
            ),
        )

    def send_password_reset(self, email: str, display_name: str, token: str) -> None:
        link = build_app_link(self._settings.app_web_url, self._settings.app_reset_password_path, token)
        name = html.escape(display_name)
        self._send(
            notification="reset_password",
            to=email,
            subject="Reset your Handsell password",
            text="\n".join(
                [
                    f"Hello, {display_name}.",
                    "",
                    "We received a request to reset your password.",
                    f"Reset it here: {link}",
                    "",
                    "If you did not ask for this, ignore this email.",
                ]
            ),
            html_body="".join(
                [
                    f"<p>Hello, {name}.</p>",
                    "<p>We received a request to reset your password.</p>",
                    f'<p><a href="{link}">Reset your password</a></p>',
                    "<p>If you did not ask for this, ignore this email.</p>",
                ]
            ),
        )

    def _send(self, *, notification: str, to: str, subject: str, text: str, html_body: str) -> None:
        payload: dict[str, Any] = {
            "from": self._settings.mail_from,
            "to": [to],
            "subject": subject,
            "html": html_body,
            "text": text,
        }
        headers = {
            "Authorization": f"Bearer {self._settings.resend_api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        try:
            if self._client is not None:
                response = self._client.post(self._settings.resend_api_url, json=payload, headers=headers)
            else:
                with httpx.Client(timeout=self._settings.mail_timeout_seconds) as client:
                    response = client.post(self._settings.resend_api_url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise NotifierError(f"Resend connectivity error: {exc}") from exc

        if response.status_code >= 400:
            raise NotifierError(f"Resend rejected {notification} email: HTTP {response.status_code}")

        message_id = None
        if response.headers.get("content-type", "").startswith("application/json"):
            message_id = response.json().get("id")
        logger.info("notifier.sent", extra={"notification": notification, "outcome": str(message_id or "sent")})


def build_notifier(settings: Settings | None = None) -> Notifier:
    settings = settings or get_settings()
    if settings.mail_provider == "resend":
        return ResendNotifier(settings)
    return LoggingNotifier()
