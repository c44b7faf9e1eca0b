"""Sink protocol for Deployforge notification routing.

All sinks implement the ``BaseSink`` protocol: a ``sink_name`` property
and an ``accept(notification)`` method.  The dispatcher calls ``accept``
on every sink registered for the notification's channel.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from deployforge.models.notifications import Notification


@runtime_checkable
class BaseSink(Protocol):
    """Protocol that every Deployforge sink must implement.

    Attributes
    ----------
    sink_name : str
        A unique human-readable identifier for this sink instance
        (e.g. ``"local_file"``, ``"email"``).
    """

    @property
    def sink_name(self) -> str:
        """Return the unique name of this sink."""
        ...

    def accept(self, notification: Notification) -> None:
        """Accept and deliver a notification.

        Raising marks the delivery as failed; the notification stays in
        the outbox and is retried on the next drain.
        """
        ...
