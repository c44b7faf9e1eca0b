"""Deployforge Monitor — pure read-only projection over the Audit Ledger.

The monitor NEVER maintains its own state.  Every call re-reads from the
ledger.  It is a projection, not a source of truth.

Modules
-------
projection
    ``ExecutionProjection`` reads the ledger and produces
    ``ExecutionSnapshot`` Pydantic models — a frozen, point-in-time view of
    one pipeline execution.
renderer
    ``MonitorRenderer`` turns ``ExecutionSnapshot`` into Rich renderables
    for terminal display, including continuous ``Rich.Live`` mode.
"""
