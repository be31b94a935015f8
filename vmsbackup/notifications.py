#!/usr/bin/env python3
"""Deliver the end-of-run summary by webhook and/or e-mail."""

from __future__ import annotations

import json
import logging
import smtplib
import socket
import ssl
from email.message import EmailMessage
from typing import Any
from urllib.error import URLError
from urllib.request import Request, urlopen

log = logging.getLogger("vms_backup")


def _as_int(value: Any, default: int | None = None) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_list(value: Any) -> list[str]:
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value if str(v).strip()]
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return []


class SummaryNotifier:
    """Send a run summary when it is worth reporting."""

    def __init__(
        self,
        *,
        webhook_cfg: dict[str, Any] | None,
        email_cfg: dict[str, Any] | None,
        only_on_error: bool = True,
    ) -> None:
        self.webhook_cfg = webhook_cfg or {}
        self.email_cfg = email_cfg or {}
        self.only_on_error = only_on_error
        self.hostname = socket.gethostname()

        self.webhook_url = str(self.webhook_cfg.get("url") or "").strip()
        self.webhook_method = (
            str(self.webhook_cfg.get("method", "POST")) or "POST"
        ).upper()
        self.webhook_headers = self._normalise_headers(self.webhook_cfg.get("headers"))
        self.webhook_timeout = float(self.webhook_cfg.get("timeout_sec", 5.0) or 5.0)

        self.email_recipients = _as_list(self.email_cfg.get("to"))
        self.email_sender = str(self.email_cfg.get("from") or "").strip()

    @staticmethod
    def _normalise_headers(headers: Any) -> dict[str, str]:
        if isinstance(headers, dict):
            return {
                str(key): str(value)
                for key, value in headers.items()
                if str(key).strip()
            }
        return {}

    def wants(self, summary: dict[str, Any]) -> bool:
        if not self.only_on_error:
            return True
        return bool(summary.get("errors")) or summary.get("state") != "completed"

    def notify(self, summary: dict[str, Any]) -> bool:
        """Returns ``True`` when the summary was handed to the channels."""

        if not self.wants(summary):
            return False
        payload = {"summary": summary, "host": self.hostname}
        self._send_webhook(payload)
        self._send_email(payload)
        return True

    # --- webhook ---
    def _send_webhook(self, payload: dict[str, Any]) -> None:
        if not self.webhook_url:
            return

        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        request = Request(
            self.webhook_url,
            data=body,
            method=self.webhook_method,
            headers={"Content-Type": "application/json", **self.webhook_headers},
        )

        try:
            with urlopen(request, timeout=self.webhook_timeout) as response:
                response.read()
        except (URLError, OSError) as exc:
            log.warning("webhook delivery failed: %s", exc)

    # --- email ---
    def _send_email(self, payload: dict[str, Any]) -> None:
        if not (self.email_sender and self.email_recipients):
            return

        smtp_host = str(self.email_cfg.get("smtp_host") or "").strip()
        if not smtp_host:
            return

        smtp_port = _as_int(self.email_cfg.get("smtp_port"), 587) or 587
        use_ssl = bool(self.email_cfg.get("use_ssl", False))
        use_tls = bool(self.email_cfg.get("use_tls", True))
        username = str(self.email_cfg.get("username") or "").strip()
        password = self.email_cfg.get("password")
        timeout = float(self.email_cfg.get("timeout_sec", 10.0) or 10.0)

        summary = payload["summary"]
        errors = summary.get("errors") or []
        message = EmailMessage()
        message["From"] = self.email_sender
        message["To"] = ", ".join(self.email_recipients)
        message["Subject"] = (
            f"vms-backup on {payload['host']}: {summary.get('state')} "
            f"({len(errors)} error(s))"
        )
        lines = [
            f"Started:  {summary.get('started_at')}",
            f"Finished: {summary.get('finished_at')}",
            f"Transfers: {summary.get('transfers')}",
            f"Folders created: {summary.get('folders_created')}",
            "",
        ]
        lines.extend(
            f"[{err.get('kind')}] {err.get('site') or '-'} {err.get('record_id') or ''}: {err.get('message')}"
            for err in errors
        )
        message.set_content("\n".join(lines) + "\n")

        try:
            if use_ssl:
                context = ssl.create_default_context()
                with smtplib.SMTP_SSL(
                    smtp_host, smtp_port, timeout=timeout, context=context
                ) as smtp:
                    self._smtp_login_and_send(smtp, username, password, message)
            else:
                with smtplib.SMTP(smtp_host, smtp_port, timeout=timeout) as smtp:
                    if use_tls:
                        context = ssl.create_default_context()
                        smtp.starttls(context=context)
                    self._smtp_login_and_send(smtp, username, password, message)
        except (smtplib.SMTPException, OSError) as exc:
            log.warning("email delivery failed: %s", exc)

    @staticmethod
    def _smtp_login_and_send(
        smtp: smtplib.SMTP, username: str, password: Any, message: EmailMessage
    ) -> None:
        if username and password:
            smtp.login(username, password)
        smtp.send_message(message)


def build_notifier(cfg: dict[str, Any] | None) -> SummaryNotifier | None:
    if not isinstance(cfg, dict):
        return None

    if not bool(cfg.get("enabled")):
        return None

    webhook_cfg = cfg.get("webhook")
    email_cfg = cfg.get("email")

    if not any((webhook_cfg, email_cfg)):
        return None

    return SummaryNotifier(
        webhook_cfg=webhook_cfg,
        email_cfg=email_cfg,
        only_on_error=bool(cfg.get("only_on_error", True)),
    )
