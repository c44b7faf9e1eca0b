"""Append-only, hash-chained Audit Ledger backed by SQLite.

The ledger is the source of truth for what the engine did.  The monitor
projection and the trigger's idempotency check both read it.

Design:
- Append-only: only ``append()`` writes; no update, no delete.
- Hash-chained per execution: each record includes the SHA-256 of the
  previous record of the same execution.
- Monotonic ``sequence`` per execution, unique with the execution id.
- At most one ``execution_created`` record per (service, artifact_id),
  enforced by a partial unique index.
- ``append()`` can join a caller's transaction so a state change and its
  audit record commit together.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from deployforge.core.database import Database
from deployforge.core.errors import DeployforgeError
from deployforge.core.hasher import canonical_json_bytes, compute_record_hash, sha256_hex
from deployforge.models.ledger import AuditEvent, AuditRecord

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS audit_ledger (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    execution_id          TEXT NOT NULL,
    sequence              INTEGER NOT NULL,
    stage_id              TEXT NOT NULL DEFAULT '',
    event                 TEXT NOT NULL,
    actor                 TEXT NOT NULL,
    timestamp_utc         TEXT NOT NULL,
    payload_json          TEXT NOT NULL DEFAULT '{}',
    service               TEXT NOT NULL DEFAULT '',
    artifact_id           TEXT NOT NULL DEFAULT '',
    previous_record_hash  TEXT NOT NULL DEFAULT '',
    record_hash           TEXT NOT NULL UNIQUE,
    UNIQUE (execution_id, sequence)
);
"""

_CREATE_IDX_EXECUTION = """
CREATE INDEX IF NOT EXISTS idx_ledger_execution ON audit_ledger(execution_id, sequence);
"""

_CREATE_IDX_SERVICE = """
CREATE INDEX IF NOT EXISTS idx_ledger_service ON audit_ledger(service, event, id);
"""

_CREATE_IDX_ONE_EXECUTION_PER_ARTIFACT = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_ledger_artifact_once
    ON audit_ledger(service, artifact_id) WHERE event = 'execution_created';
"""


class LedgerIntegrityError(DeployforgeError):
    """Raised when the hash chain is broken."""

    kind = "ledger-integrity"


class DuplicateExecutionError(DeployforgeError):
    """An execution already exists for this (service, artifact_id)."""

    kind = "duplicate-execution"


class AuditLedger:
    """Append-only, hash-chained Audit Ledger.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path | str) -> None:
        self._db = Database(db_path)
        self._db.init_schema(
            _CREATE_LEDGER,
            _CREATE_IDX_EXECUTION,
            _CREATE_IDX_SERVICE,
            _CREATE_IDX_ONE_EXECUTION_PER_ARTIFACT,
        )

    @property
    def database(self) -> Database:
        return self._db

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def append(
        self, record: AuditRecord, *, conn: sqlite3.Connection | None = None
    ) -> AuditRecord:
        """Append a record, assigning its sequence number and hash link.

        This is the ONLY write method. There is no update or delete.
        """
        with self._db.transaction(conn) as tx:
            row = tx.execute(
                "SELECT sequence, record_hash FROM audit_ledger "
                "WHERE execution_id = ? ORDER BY sequence DESC LIMIT 1",
                (record.execution_id,),
            ).fetchone()
            sequence = (row["sequence"] + 1) if row else 1
            previous_hash = row["record_hash"] if row else ""

            record_dict = record.model_dump(mode="json")
            record_dict["sequence"] = sequence
            record_dict["previous_record_hash"] = previous_hash
            record_dict["record_hash"] = ""
            record_hash = compute_record_hash(record_dict)

            sealed = record.model_copy(
                update={
                    "sequence": sequence,
                    "previous_record_hash": previous_hash,
                    "record_hash": record_hash,
                }
            )
            try:
                tx.execute(
                    """
                    INSERT INTO audit_ledger
                        (execution_id, sequence, stage_id, event, actor,
                         timestamp_utc, payload_json, service, artifact_id,
                         previous_record_hash, record_hash)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        sealed.execution_id,
                        sealed.sequence,
                        sealed.stage_id,
                        sealed.event.value,
                        sealed.actor,
                        record_dict["timestamp_utc"],
                        json.dumps(record_dict["payload"], sort_keys=True),
                        sealed.service,
                        sealed.artifact_id,
                        sealed.previous_record_hash,
                        sealed.record_hash,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                if sealed.event == AuditEvent.EXECUTION_CREATED:
                    raise DuplicateExecutionError(
                        f"execution already exists for {sealed.service} "
                        f"artifact {sealed.artifact_id}"
                    ) from exc
                raise
        return sealed

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def get_execution_records(self, execution_id: str) -> list[AuditRecord]:
        """Return all records for an execution, in sequence order."""
        with self._db.reading() as conn:
            rows = conn.execute(
                "SELECT * FROM audit_ledger WHERE execution_id = ? ORDER BY sequence ASC",
                (execution_id,),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def get_stage_records(self, execution_id: str, stage_id: str) -> list[AuditRecord]:
        with self._db.reading() as conn:
            rows = conn.execute(
                "SELECT * FROM audit_ledger WHERE execution_id = ? AND stage_id = ? "
                "ORDER BY sequence ASC",
                (execution_id, stage_id),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def get_service_records(
        self, service: str, event: AuditEvent | None = None
    ) -> list[AuditRecord]:
        """Return every record for a service in global append order."""
        query = "SELECT * FROM audit_ledger WHERE service = ?"
        params: list[Any] = [service]
        if event is not None:
            query += " AND event = ?"
            params.append(event.value)
        query += " ORDER BY id ASC"
        with self._db.reading() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_record(row) for row in rows]

    def find_execution_for_artifact(self, service: str, artifact_id: str) -> str | None:
        """Return the execution id created for this artifact, if any."""
        with self._db.reading() as conn:
            row = conn.execute(
                "SELECT execution_id FROM audit_ledger "
                "WHERE service = ? AND artifact_id = ? AND event = ?",
                (service, artifact_id, AuditEvent.EXECUTION_CREATED.value),
            ).fetchone()
        return row["execution_id"] if row else None

    def get_all_execution_ids(self) -> list[str]:
        with self._db.reading() as conn:
            rows = conn.execute(
                "SELECT execution_id, MAX(id) AS last_id FROM audit_ledger "
                "GROUP BY execution_id ORDER BY last_id DESC"
            ).fetchall()
        return [row["execution_id"] for row in rows]

    def audit_ref(
        self, execution_id: str, *, conn: sqlite3.Connection | None = None
    ) -> str:
        """Reference to an execution's ledger entries: ``audit://<id>#1-<n>``.

        Pass *conn* to include records appended in an open transaction.
        """
        sql = (
            "SELECT MIN(sequence) AS first, MAX(sequence) AS last "
            "FROM audit_ledger WHERE execution_id = ?"
        )
        if conn is not None:
            row = conn.execute(sql, (execution_id,)).fetchone()
        else:
            with self._db.reading() as reader:
                row = reader.execute(sql, (execution_id,)).fetchone()
        if row is None or row["first"] is None:
            return f"audit://{execution_id}"
        return f"audit://{execution_id}#{row['first']}-{row['last']}"

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, execution_id: str) -> bool:
        """Verify the hash chain integrity for an execution.

        Returns True if the chain is valid, raises LedgerIntegrityError otherwise.
        """
        prev_hash = ""
        expected_sequence = 1
        for record in self.get_execution_records(execution_id):
            if record.sequence != expected_sequence:
                raise LedgerIntegrityError(
                    f"Sequence gap in {execution_id}: expected "
                    f"{expected_sequence}, got {record.sequence}"
                )
            if record.previous_record_hash != prev_hash:
                raise LedgerIntegrityError(
                    f"Chain broken at {execution_id}#{record.sequence}: "
                    f"expected previous_hash={prev_hash!r}, "
                    f"got {record.previous_record_hash!r}"
                )
            expected_hash = compute_record_hash(record.model_dump(mode="json"))
            if record.record_hash != expected_hash:
                raise LedgerIntegrityError(
                    f"Tampered record {execution_id}#{record.sequence}: "
                    f"expected hash={expected_hash!r}, got {record.record_hash!r}"
                )
            prev_hash = record.record_hash
            expected_sequence += 1
        return True

    def export_anchor(self, execution_id: str) -> dict[str, Any]:
        """Export a tamper-evident anchor for external witnessing.

        Comparing a previously exported anchor against the current chain
        detects retroactive rewrites.
        """
        records = self.get_execution_records(execution_id)
        anchor: dict[str, Any] = {
            "execution_id": execution_id,
            "record_count": len(records),
            "root_hash": records[-1].record_hash if records else "",
            "first_record_hash": records[0].record_hash if records else "",
            "timestamp_utc": datetime.now(timezone.utc).isoformat(),
        }
        anchor["anchor_hash"] = (
            sha256_hex(canonical_json_bytes(anchor)) if records else ""
        )
        return anchor

    def verify_against_anchor(self, execution_id: str, anchor: dict[str, Any]) -> bool:
        """Verify the current chain against a previously exported anchor."""
        records = self.get_execution_records(execution_id)
        expected_count = anchor.get("record_count", 0)
        if len(records) < expected_count:
            raise LedgerIntegrityError(
                f"Chain for {execution_id} has {len(records)} records but "
                f"anchor expects at least {expected_count}."
            )
        if expected_count == 0:
            return True
        if records[0].record_hash != anchor.get("first_record_hash", ""):
            raise LedgerIntegrityError(
                f"First record hash mismatch for {execution_id}."
            )
        if records[expected_count - 1].record_hash != anchor.get("root_hash", ""):
            raise LedgerIntegrityError(
                f"Root hash mismatch at record {expected_count} for {execution_id}."
            )
        return self.verify_chain(execution_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> AuditRecord:
        return AuditRecord(
            execution_id=row["execution_id"],
            sequence=row["sequence"],
            stage_id=row["stage_id"],
            event=AuditEvent(row["event"]),
            actor=row["actor"],
            timestamp_utc=row["timestamp_utc"],
            payload=json.loads(row["payload_json"]),
            service=row["service"],
            artifact_id=row["artifact_id"],
            previous_record_hash=row["previous_record_hash"],
            record_hash=row["record_hash"],
        )
