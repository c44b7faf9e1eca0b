"""Deployforge notification routing — delivers notifications to sinks by channel.

Sinks are pluggable targets: local JSON files, email notification payloads,
or any custom sink implementing the ``BaseSink`` protocol.  Each sink is
registered under one or more channels; a pipeline's finalizers name the
channel they notify.  Urgent notifications ignore channels and reach every
registered sink.
"""

from deployforge.routing.dispatcher import NotificationDispatcher, SinkDispatchError

__all__ = ["NotificationDispatcher", "SinkDispatchError"]
