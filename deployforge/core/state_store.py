"""Persisted engine state: definitions, executions, server groups, judgments.

Every record is stored as the JSON of its frozen pydantic model plus the
columns needed to query it.  Writers accept an optional connection so the
executor can commit a state change and its audit record together.

The ACTIVE-role invariant lives here: ``assign_roles`` applies a role map
in one transaction and refuses any result with more than one ACTIVE group
for the service.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from deployforge.core.database import Database
from deployforge.core.errors import ExecutionNotFoundError, RoleInvariantError
from deployforge.models.execution import (
    ExecutionStatus,
    PipelineExecution,
    StageExecution,
)
from deployforge.models.judgment import JudgmentDecision, JudgmentRequest
from deployforge.models.notifications import Notification
from deployforge.models.pipeline import PipelineDefinition
from deployforge.models.server_groups import ServerGroup, ServerGroupRole

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_DEFINITIONS = """
CREATE TABLE IF NOT EXISTS pipeline_definitions (
    service        TEXT PRIMARY KEY,
    version        TEXT NOT NULL,
    body_json      TEXT NOT NULL,
    registered_at  TEXT NOT NULL
);
"""

_CREATE_EXECUTIONS = """
CREATE TABLE IF NOT EXISTS executions (
    execution_id     TEXT PRIMARY KEY,
    service          TEXT NOT NULL,
    artifact_id      TEXT NOT NULL,
    status           TEXT NOT NULL,
    body_json        TEXT NOT NULL,
    definition_json  TEXT NOT NULL,
    updated_at       TEXT NOT NULL
);
"""

_CREATE_IDX_EXECUTIONS = """
CREATE INDEX IF NOT EXISTS idx_executions_service_status ON executions(service, status);
"""

_CREATE_STAGES = """
CREATE TABLE IF NOT EXISTS stage_executions (
    execution_id  TEXT NOT NULL,
    stage_id      TEXT NOT NULL,
    status        TEXT NOT NULL,
    body_json     TEXT NOT NULL,
    PRIMARY KEY (execution_id, stage_id)
);
"""

_CREATE_GROUPS = """
CREATE TABLE IF NOT EXISTS server_groups (
    service    TEXT NOT NULL,
    group_id   TEXT NOT NULL,
    role       TEXT NOT NULL,
    body_json  TEXT NOT NULL,
    PRIMARY KEY (service, group_id)
);
"""

_CREATE_JUDGMENTS = """
CREATE TABLE IF NOT EXISTS judgments (
    execution_id  TEXT NOT NULL,
    stage_id      TEXT NOT NULL,
    decision      TEXT NOT NULL,
    resumed       INTEGER NOT NULL DEFAULT 0,
    body_json     TEXT NOT NULL,
    PRIMARY KEY (execution_id, stage_id)
);
"""

_CREATE_OUTBOX = """
CREATE TABLE IF NOT EXISTS notification_outbox (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    execution_id  TEXT NOT NULL,
    channel       TEXT NOT NULL,
    body_json     TEXT NOT NULL,
    delivered     INTEGER NOT NULL DEFAULT 0,
    attempts      INTEGER NOT NULL DEFAULT 0,
    last_error    TEXT NOT NULL DEFAULT ''
);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ExecutionStore:
    """SQLite-backed store for everything the executor must survive a restart with.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Share it with the ``AuditLedger``
        so transitions and their audit records commit atomically.
    """

    def __init__(self, db_path: Path | str) -> None:
        self._db = Database(db_path)
        self._db.init_schema(
            _CREATE_DEFINITIONS,
            _CREATE_EXECUTIONS,
            _CREATE_IDX_EXECUTIONS,
            _CREATE_STAGES,
            _CREATE_GROUPS,
            _CREATE_JUDGMENTS,
            _CREATE_OUTBOX,
        )

    @property
    def database(self) -> Database:
        return self._db

    def transaction(self, conn: sqlite3.Connection | None = None):
        return self._db.transaction(conn)

    # ------------------------------------------------------------------
    # Pipeline definitions
    # ------------------------------------------------------------------

    def save_definition(self, definition: PipelineDefinition) -> None:
        with self._db.transaction() as tx:
            tx.execute(
                "INSERT INTO pipeline_definitions (service, version, body_json, registered_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(service) DO UPDATE SET version = excluded.version, "
                "body_json = excluded.body_json, registered_at = excluded.registered_at",
                (definition.service, definition.version, definition.model_dump_json(), _now()),
            )

    def get_definition(self, service: str) -> PipelineDefinition | None:
        with self._db.reading() as conn:
            row = conn.execute(
                "SELECT body_json FROM pipeline_definitions WHERE service = ?", (service,)
            ).fetchone()
        return PipelineDefinition.model_validate_json(row["body_json"]) if row else None

    def list_definitions(self) -> list[PipelineDefinition]:
        with self._db.reading() as conn:
            rows = conn.execute(
                "SELECT body_json FROM pipeline_definitions ORDER BY service"
            ).fetchall()
        return [PipelineDefinition.model_validate_json(r["body_json"]) for r in rows]

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def create_execution(
        self,
        execution: PipelineExecution,
        definition: PipelineDefinition,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """Persist a new execution with a snapshot of its definition."""
        with self._db.transaction(conn) as tx:
            tx.execute(
                "INSERT INTO executions (execution_id, service, artifact_id, status, "
                "body_json, definition_json, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    execution.execution_id,
                    execution.service,
                    execution.artifact.artifact_id,
                    execution.status.value,
                    execution.model_dump_json(),
                    definition.model_dump_json(),
                    _now(),
                ),
            )

    def save_execution(
        self, execution: PipelineExecution, *, conn: sqlite3.Connection | None = None
    ) -> None:
        with self._db.transaction(conn) as tx:
            cursor = tx.execute(
                "UPDATE executions SET status = ?, body_json = ?, updated_at = ? "
                "WHERE execution_id = ?",
                (
                    execution.status.value,
                    execution.model_dump_json(),
                    _now(),
                    execution.execution_id,
                ),
            )
            if cursor.rowcount == 0:
                raise ExecutionNotFoundError(execution.execution_id)

    def get_execution(
        self, execution_id: str, *, conn: sqlite3.Connection | None = None
    ) -> PipelineExecution:
        if conn is not None:
            row = conn.execute(
                "SELECT body_json FROM executions WHERE execution_id = ?", (execution_id,)
            ).fetchone()
        else:
            with self._db.reading() as reader:
                row = reader.execute(
                    "SELECT body_json FROM executions WHERE execution_id = ?",
                    (execution_id,),
                ).fetchone()
        if row is None:
            raise ExecutionNotFoundError(execution_id)
        return PipelineExecution.model_validate_json(row["body_json"])

    def get_execution_definition(self, execution_id: str) -> PipelineDefinition:
        """The definition snapshot the execution was instantiated with."""
        with self._db.reading() as conn:
            row = conn.execute(
                "SELECT definition_json FROM executions WHERE execution_id = ?",
                (execution_id,),
            ).fetchone()
        if row is None:
            raise ExecutionNotFoundError(execution_id)
        return PipelineDefinition.model_validate_json(row["definition_json"])

    def list_executions(
        self,
        service: str | None = None,
        status: ExecutionStatus | list[ExecutionStatus] | None = None,
    ) -> list[PipelineExecution]:
        query = "SELECT body_json FROM executions WHERE 1 = 1"
        params: list[str] = []
        if service is not None:
            query += " AND service = ?"
            params.append(service)
        if status is not None:
            statuses = status if isinstance(status, list) else [status]
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(s.value for s in statuses)
        query += " ORDER BY rowid ASC"
        with self._db.reading() as conn:
            rows = conn.execute(query, params).fetchall()
        return [PipelineExecution.model_validate_json(r["body_json"]) for r in rows]

    # ------------------------------------------------------------------
    # Stage executions
    # ------------------------------------------------------------------

    def save_stage(
        self, stage: StageExecution, *, conn: sqlite3.Connection | None = None
    ) -> None:
        with self._db.transaction(conn) as tx:
            tx.execute(
                "INSERT INTO stage_executions (execution_id, stage_id, status, body_json) "
                "VALUES (?, ?, ?, ?) ON CONFLICT(execution_id, stage_id) DO UPDATE SET "
                "status = excluded.status, body_json = excluded.body_json",
                (
                    stage.execution_id,
                    stage.stage_id,
                    stage.status.value,
                    stage.model_dump_json(),
                ),
            )

    def get_stage(
        self,
        execution_id: str,
        stage_id: str,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> StageExecution | None:
        sql = "SELECT body_json FROM stage_executions WHERE execution_id = ? AND stage_id = ?"
        if conn is not None:
            row = conn.execute(sql, (execution_id, stage_id)).fetchone()
        else:
            with self._db.reading() as reader:
                row = reader.execute(sql, (execution_id, stage_id)).fetchone()
        return StageExecution.model_validate_json(row["body_json"]) if row else None

    def list_stages(self, execution_id: str) -> list[StageExecution]:
        with self._db.reading() as conn:
            rows = conn.execute(
                "SELECT body_json FROM stage_executions WHERE execution_id = ? ORDER BY rowid",
                (execution_id,),
            ).fetchall()
        return [StageExecution.model_validate_json(r["body_json"]) for r in rows]

    # ------------------------------------------------------------------
    # Server groups
    # ------------------------------------------------------------------

    def register_group(
        self, group: ServerGroup, *, conn: sqlite3.Connection | None = None
    ) -> None:
        if group.role == ServerGroupRole.ACTIVE:
            raise RoleInvariantError(
                f"{group.group_id}: groups are registered inactive and promoted by cutover"
            )
        with self._db.transaction(conn) as tx:
            tx.execute(
                "INSERT INTO server_groups (service, group_id, role, body_json) "
                "VALUES (?, ?, ?, ?) ON CONFLICT(service, group_id) DO UPDATE SET "
                "role = excluded.role, body_json = excluded.body_json",
                (group.service, group.group_id, group.role.value, group.model_dump_json()),
            )

    def get_group(
        self,
        service: str,
        group_id: str,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> ServerGroup | None:
        sql = "SELECT body_json FROM server_groups WHERE service = ? AND group_id = ?"
        if conn is not None:
            row = conn.execute(sql, (service, group_id)).fetchone()
        else:
            with self._db.reading() as reader:
                row = reader.execute(sql, (service, group_id)).fetchone()
        return ServerGroup.model_validate_json(row["body_json"]) if row else None

    def list_groups(self, service: str) -> list[ServerGroup]:
        with self._db.reading() as conn:
            rows = conn.execute(
                "SELECT body_json FROM server_groups WHERE service = ? ORDER BY rowid",
                (service,),
            ).fetchall()
        return [ServerGroup.model_validate_json(r["body_json"]) for r in rows]

    def active_group(self, service: str) -> ServerGroup | None:
        with self._db.reading() as conn:
            row = conn.execute(
                "SELECT body_json FROM server_groups WHERE service = ? AND role = ?",
                (service, ServerGroupRole.ACTIVE.value),
            ).fetchone()
        return ServerGroup.model_validate_json(row["body_json"]) if row else None

    def role_map(
        self, service: str, *, conn: sqlite3.Connection | None = None
    ) -> dict[str, str]:
        sql = "SELECT group_id, role FROM server_groups WHERE service = ? ORDER BY group_id"
        if conn is not None:
            rows = conn.execute(sql, (service,)).fetchall()
        else:
            with self._db.reading() as reader:
                rows = reader.execute(sql, (service,)).fetchall()
        return {r["group_id"]: r["role"] for r in rows}

    def assign_roles(
        self,
        service: str,
        roles: dict[str, ServerGroupRole],
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, str]:
        """Apply a role map atomically and return the service's new role map.

        Raises ``RoleInvariantError`` (and rolls back) if the result would
        hold more than one ACTIVE group, or names an unknown group.
        """
        with self._db.transaction(conn) as tx:
            for group_id, role in roles.items():
                current = self.get_group(service, group_id, conn=tx)
                if current is None:
                    raise RoleInvariantError(f"unknown server group {service}/{group_id}")
                updated = current.model_copy(update={"role": role})
                tx.execute(
                    "UPDATE server_groups SET role = ?, body_json = ? "
                    "WHERE service = ? AND group_id = ?",
                    (role.value, updated.model_dump_json(), service, group_id),
                )
            active = tx.execute(
                "SELECT COUNT(*) AS n FROM server_groups WHERE service = ? AND role = ?",
                (service, ServerGroupRole.ACTIVE.value),
            ).fetchone()["n"]
            if active > 1:
                raise RoleInvariantError(
                    f"{service}: role assignment {roles} leaves {active} ACTIVE groups"
                )
            return self.role_map(service, conn=tx)

    def remove_group(
        self, service: str, group_id: str, *, conn: sqlite3.Connection | None = None
    ) -> None:
        with self._db.transaction(conn) as tx:
            tx.execute(
                "DELETE FROM server_groups WHERE service = ? AND group_id = ?",
                (service, group_id),
            )

    # ------------------------------------------------------------------
    # Judgments
    # ------------------------------------------------------------------

    def save_judgment(
        self, request: JudgmentRequest, *, conn: sqlite3.Connection | None = None
    ) -> None:
        with self._db.transaction(conn) as tx:
            tx.execute(
                "INSERT INTO judgments (execution_id, stage_id, decision, resumed, body_json) "
                "VALUES (?, ?, ?, ?, ?) ON CONFLICT(execution_id, stage_id) DO UPDATE SET "
                "decision = excluded.decision, resumed = excluded.resumed, "
                "body_json = excluded.body_json",
                (
                    request.execution_id,
                    request.stage_id,
                    request.decision.value,
                    int(request.resumed),
                    request.model_dump_json(),
                ),
            )

    def get_judgment(
        self,
        execution_id: str,
        stage_id: str,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> JudgmentRequest | None:
        sql = "SELECT body_json FROM judgments WHERE execution_id = ? AND stage_id = ?"
        if conn is not None:
            row = conn.execute(sql, (execution_id, stage_id)).fetchone()
        else:
            with self._db.reading() as reader:
                row = reader.execute(sql, (execution_id, stage_id)).fetchone()
        return JudgmentRequest.model_validate_json(row["body_json"]) if row else None

    def latest_judgment(
        self, execution_id: str, *, conn: sqlite3.Connection | None = None
    ) -> JudgmentRequest | None:
        """The execution's most recently requested judgment."""
        sql = (
            "SELECT body_json FROM judgments WHERE execution_id = ? "
            "ORDER BY rowid DESC LIMIT 1"
        )
        if conn is not None:
            row = conn.execute(sql, (execution_id,)).fetchone()
        else:
            with self._db.reading() as reader:
                row = reader.execute(sql, (execution_id,)).fetchone()
        return JudgmentRequest.model_validate_json(row["body_json"]) if row else None

    def record_decision(
        self, decided: JudgmentRequest, *, conn: sqlite3.Connection | None = None
    ) -> bool:
        """Store a decision only if the judgment is still pending.

        Returns False when another caller decided first.
        """
        with self._db.transaction(conn) as tx:
            cursor = tx.execute(
                "UPDATE judgments SET decision = ?, body_json = ? "
                "WHERE execution_id = ? AND stage_id = ? AND decision = ?",
                (
                    decided.decision.value,
                    decided.model_dump_json(),
                    decided.execution_id,
                    decided.stage_id,
                    JudgmentDecision.PENDING.value,
                ),
            )
            return cursor.rowcount == 1

    def mark_judgment_resumed(
        self, execution_id: str, stage_id: str, *, conn: sqlite3.Connection | None = None
    ) -> None:
        with self._db.transaction(conn) as tx:
            current = self.get_judgment(execution_id, stage_id, conn=tx)
            if current is None or current.resumed:
                return
            resumed = current.model_copy(update={"resumed": True})
            tx.execute(
                "UPDATE judgments SET resumed = 1, body_json = ? "
                "WHERE execution_id = ? AND stage_id = ?",
                (resumed.model_dump_json(), execution_id, stage_id),
            )

    def list_judgments(
        self, decision: JudgmentDecision | None = None, *, unresumed_only: bool = False
    ) -> list[JudgmentRequest]:
        query = "SELECT body_json FROM judgments WHERE 1 = 1"
        params: list[str | int] = []
        if decision is not None:
            query += " AND decision = ?"
            params.append(decision.value)
        if unresumed_only:
            query += " AND resumed = 0"
        query += " ORDER BY rowid"
        with self._db.reading() as conn:
            rows = conn.execute(query, params).fetchall()
        return [JudgmentRequest.model_validate_json(r["body_json"]) for r in rows]

    # ------------------------------------------------------------------
    # Notification outbox (at-least-once finalizers)
    # ------------------------------------------------------------------

    def enqueue_notification(
        self,
        notification: Notification,
        channel: str,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        with self._db.transaction(conn) as tx:
            tx.execute(
                "INSERT INTO notification_outbox (execution_id, channel, body_json) "
                "VALUES (?, ?, ?)",
                (notification.execution_id, channel, notification.model_dump_json()),
            )

    def pending_notifications(self) -> list[tuple[int, str, Notification]]:
        with self._db.reading() as conn:
            rows = conn.execute(
                "SELECT id, channel, body_json FROM notification_outbox "
                "WHERE delivered = 0 ORDER BY id"
            ).fetchall()
        return [
            (r["id"], r["channel"], Notification.model_validate_json(r["body_json"]))
            for r in rows
        ]

    def mark_notification_delivered(self, outbox_id: int) -> None:
        with self._db.transaction() as tx:
            tx.execute(
                "UPDATE notification_outbox SET delivered = 1, attempts = attempts + 1 "
                "WHERE id = ?",
                (outbox_id,),
            )

    def record_notification_failure(self, outbox_id: int, error: str) -> None:
        with self._db.transaction() as tx:
            tx.execute(
                "UPDATE notification_outbox SET attempts = attempts + 1, last_error = ? "
                "WHERE id = ?",
                (error, outbox_id),
            )
