"""Email notification sink — builds email notification payloads.

This module constructs email-compatible message payloads from
notifications.  SMTP delivery is left to a transport layer; this sink only
builds the payload and buffers it.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict

from deployforge.models.notifications import Notification, NotificationSeverity

logger = logging.getLogger(__name__)

_SEVERITY_LABEL = {
    NotificationSeverity.INFO: "INFO",
    NotificationSeverity.WARNING: "WARNING",
    NotificationSeverity.CRITICAL: "CRITICAL",
}


class EmailPayload(BaseModel):
    """An email notification payload ready for SMTP delivery."""

    model_config = ConfigDict(frozen=True)

    recipient: str
    sender: str
    subject: str
    body_text: str
    body_html: str = ""
    headers: dict[str, str] = {}


class EmailSink:
    """Builds email payloads from notifications.

    This sink does NOT send emails.  Payloads are buffered for retrieval
    by a transport layer or test harness via ``flush()``.

    Parameters
    ----------
    recipient:
        The email address to send notifications to.
    sender:
        The sender address.  Defaults to ``deployforge@localhost``.
    """

    def __init__(self, recipient: str, sender: str = "deployforge@localhost") -> None:
        self._recipient = recipient
        self._sender = sender
        self._pending_payloads: list[EmailPayload] = []

    @property
    def sink_name(self) -> str:
        return "email"

    def accept(self, notification: Notification) -> None:
        payload = EmailPayload(
            recipient=self._recipient,
            sender=self._sender,
            subject=self._format_subject(notification),
            body_text=self._format_body_text(notification),
            body_html=self._format_body_html(notification),
            headers={
                "X-Deployforge-Execution-Id": notification.execution_id,
                "X-Deployforge-Service": notification.service,
                "X-Deployforge-Audit-Ref": notification.audit_ref,
                "X-Priority": "1" if notification.urgent else "3",
            },
        )
        self._pending_payloads.append(payload)
        logger.debug(
            "EmailSink: queued notification %s", notification.notification_id
        )

    def flush(self) -> list[EmailPayload]:
        """Return and clear all pending payloads."""
        payloads = list(self._pending_payloads)
        self._pending_payloads.clear()
        return payloads

    @property
    def pending_count(self) -> int:
        return len(self._pending_payloads)

    @staticmethod
    def _format_subject(notification: Notification) -> str:
        prefix = "[URGENT] " if notification.urgent else ""
        return (
            f"{prefix}[Deployforge] {notification.service} "
            f"{notification.artifact_id}: {notification.event}"
        )

    @staticmethod
    def _format_body_text(notification: Notification) -> str:
        lines: list[str] = [
            f"Deployforge {_SEVERITY_LABEL[notification.severity]}",
            "=" * 40,
            f"Execution: {notification.execution_id}",
            f"Service:   {notification.service}",
            f"Artifact:  {notification.artifact_id}",
            f"Status:    {notification.status or '-'}",
            f"Timestamp: {notification.timestamp_utc.isoformat()}",
            f"Audit:     {notification.audit_ref}",
            "",
            notification.message,
            "",
            "-- Deployforge Deployment Notification",
        ]
        return "\n".join(lines)

    @staticmethod
    def _format_body_html(notification: Notification) -> str:
        rows = [
            f"<tr><td><b>Execution</b></td><td><code>{notification.execution_id}</code></td></tr>",
            f"<tr><td><b>Service</b></td><td>{notification.service}</td></tr>",
            f"<tr><td><b>Artifact</b></td><td><code>{notification.artifact_id}</code></td></tr>",
            f"<tr><td><b>Status</b></td><td>{notification.status or '-'}</td></tr>",
            f"<tr><td><b>Audit</b></td><td><code>{notification.audit_ref}</code></td></tr>",
        ]
        table = "\n".join(rows)
        return (
            f"<h2>Deployforge {notification.event}</h2>\n"
            f"<p>{notification.message}</p>\n"
            f"<table>\n{table}\n</table>\n"
            f"<hr/><p><em>Deployforge Deployment Notification</em></p>"
        )
