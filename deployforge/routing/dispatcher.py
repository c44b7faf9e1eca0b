"""NotificationDispatcher — routes notifications to the sinks of a channel.

Every notification sent on a channel is fanned out to every sink registered
for that channel.  Sink failures are logged but do not prevent delivery to
the remaining sinks.  Urgent notifications are never routed: they reach
every registered sink.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from deployforge.models.notifications import Notification

if TYPE_CHECKING:
    from deployforge.routing.sinks import BaseSink

logger = logging.getLogger(__name__)


class SinkDispatchError(RuntimeError):
    """Raised when every sink for a notification failed."""


class NotificationDispatcher:
    """Routes notifications to sinks by channel.

    Parameters
    ----------
    default_channel:
        Channel used when a notification names a channel nobody listens on.

    Usage
    -----
    >>> dispatcher = NotificationDispatcher()
    >>> dispatcher.register_sink(local_file_sink)
    >>> dispatcher.register_sink(email_sink, channels=["release-team"])
    >>> dispatcher.send(notification, "release-team")
    """

    def __init__(self, default_channel: str = "default") -> None:
        self._default_channel = default_channel
        self._channels: dict[str, list[BaseSink]] = {}

    # ------------------------------------------------------------------
    # Sink management
    # ------------------------------------------------------------------

    def register_sink(self, sink: BaseSink, channels: Iterable[str] | None = None) -> None:
        """Register *sink* on *channels* (the default channel if omitted).

        Duplicate registration of the same sink on a channel is ignored.
        """
        for channel in channels or [self._default_channel]:
            sinks = self._channels.setdefault(channel, [])
            if sink not in sinks:
                sinks.append(sink)
                logger.info("Registered sink %s on channel %s", sink.sink_name, channel)

    def unregister_sink(self, sink: BaseSink) -> None:
        """Remove a sink from every channel."""
        for channel, sinks in self._channels.items():
            if sink in sinks:
                sinks.remove(sink)
                logger.info("Unregistered sink %s from channel %s", sink.sink_name, channel)

    @property
    def registered_sinks(self) -> list[BaseSink]:
        """Every registered sink, once each, in registration order."""
        seen: list[BaseSink] = []
        for sinks in self._channels.values():
            for sink in sinks:
                if sink not in seen:
                    seen.append(sink)
        return seen

    def sinks_for(self, channel: str) -> list[BaseSink]:
        sinks = self._channels.get(channel)
        if sinks:
            return list(sinks)
        if channel != self._default_channel:
            logger.warning(
                "No sinks on channel %s; using channel %s", channel, self._default_channel
            )
        return list(self._channels.get(self._default_channel, []))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def send(self, notification: Notification, channel: str | None = None) -> list[str]:
        """Deliver *notification* and return the names of sinks that accepted it.

        Raises
        ------
        SinkDispatchError
            If *all* targeted sinks fail.  Individual failures are tolerated.
        """
        if notification.urgent:
            targets = self.registered_sinks
            logger.critical(
                "URGENT %s for %s (%s): %s",
                notification.event,
                notification.execution_id,
                notification.service,
                notification.message,
            )
        else:
            targets = self.sinks_for(channel or self._default_channel)

        if not targets:
            logger.warning(
                "No sinks registered; notification %s not delivered",
                notification.notification_id,
            )
            return []

        succeeded: list[str] = []
        errors: list[tuple[str, Exception]] = []
        for sink in targets:
            try:
                sink.accept(notification)
                succeeded.append(sink.sink_name)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Sink %s failed for notification %s: %s",
                    sink.sink_name,
                    notification.notification_id,
                    exc,
                )
                errors.append((sink.sink_name, exc))

        if errors and not succeeded:
            raise SinkDispatchError(
                f"All {len(errors)} sinks failed for notification "
                f"{notification.notification_id}: "
                + "; ".join(f"{name}: {exc}" for name, exc in errors)
            )
        if errors:
            logger.warning(
                "Notification %s: %d/%d sinks succeeded, %d failed",
                notification.notification_id,
                len(succeeded),
                len(targets),
                len(errors),
            )
        return succeeded
