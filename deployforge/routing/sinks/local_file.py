"""Local file sink — writes notifications to local JSON files.

Layout: {base_path}/{service}/{execution_id}/{notification_id}.json
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from deployforge.core.hasher import canonical_json_bytes
from deployforge.models.notifications import Notification

logger = logging.getLogger(__name__)


class LocalFileSink:
    """Writes notifications to local JSON files.

    Parameters
    ----------
    base_path:
        Root directory for event files.  Defaults to ``.deployforge/events``;
        directories are created on the first write.
    """

    def __init__(self, base_path: Path | str | None = None) -> None:
        self._base = Path(base_path) if base_path else Path(".deployforge/events")

    @property
    def sink_name(self) -> str:
        return "local_file"

    def accept(self, notification: Notification) -> None:
        target_dir = self._base / notification.service / notification.execution_id
        target_dir.mkdir(parents=True, exist_ok=True)

        target_file = target_dir / f"{notification.notification_id}.json"
        target_file.write_bytes(canonical_json_bytes(notification.model_dump(mode="json")))

        logger.debug(
            "LocalFileSink: wrote %s to %s", notification.notification_id, target_file
        )

    def list_events(self, service: str, execution_id: str | None = None) -> list[Path]:
        """List notification files for a service, optionally one execution."""
        service_dir = self._base / service
        if execution_id:
            service_dir = service_dir / execution_id
        if not service_dir.exists():
            return []
        return sorted(service_dir.rglob("*.json"))

    def read_event(self, path: Path) -> dict:
        """Read and parse a single event file."""
        return json.loads(path.read_bytes())
