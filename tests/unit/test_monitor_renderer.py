"""Unit tests for the MonitorRenderer.

Tests Rich panel output, status color mapping, traffic and canary summary
lines, and chain status rendering.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from rich.console import Console
from rich.panel import Panel

from deployforge.models.execution import ExecutionStatus, StageStatus
from deployforge.monitor.projection import ExecutionSnapshot, StageView
from deployforge.monitor.renderer import (
    EXECUTION_STYLES,
    MonitorRenderer,
    _STATUS_LABELS,
    _STATUS_STYLES,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_snapshot(**overrides) -> ExecutionSnapshot:
    """Create a minimal ExecutionSnapshot for testing."""
    fields = {
        "execution_id": "dx-test-001",
        "service": "svc",
        "artifact_id": "svc:7",
        "status": ExecutionStatus.RUNNING,
        "stages": [
            StageView(stage_id="candidate", stage_type="deploy", status=StageStatus.SUCCEEDED),
            StageView(stage_id="analysis", stage_type="canary_analysis", status=StageStatus.RUNNING),
            StageView(stage_id="cutover", stage_type="cutover"),
        ],
        "weights": {"svc-blue": 90, "svc-canary": 10},
        "last_updated": datetime(2026, 2, 27, 12, 0, 0, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return ExecutionSnapshot(**fields)


def _render(snapshot: ExecutionSnapshot) -> str:
    console = Console(width=240, color_system=None)
    renderer = MonitorRenderer(console=console)
    with console.capture() as capture:
        console.print(renderer.render_snapshot(snapshot))
    return capture.get()


# ---------------------------------------------------------------------------
# Test: Status mappings
# ---------------------------------------------------------------------------


class TestStatusMappings:
    """Style and label mappings must cover every status value."""

    def test_all_stage_statuses_have_styles(self):
        for status in StageStatus:
            assert status in _STATUS_STYLES, f"Missing style for {status}"

    def test_all_stage_statuses_have_labels(self):
        for status in StageStatus:
            assert status in _STATUS_LABELS, f"Missing label for {status}"

    def test_all_execution_statuses_have_styles(self):
        for status in ExecutionStatus:
            assert status in EXECUTION_STYLES, f"Missing style for {status}"


# ---------------------------------------------------------------------------
# Test: Render snapshot
# ---------------------------------------------------------------------------


class TestRenderSnapshot:
    """render_snapshot must produce a Rich Panel with correct content."""

    def test_render_returns_panel(self):
        assert isinstance(MonitorRenderer().render_snapshot(_make_snapshot()), Panel)

    def test_render_includes_execution_and_stages(self):
        output = _render(_make_snapshot())
        assert "dx-test-001" in output
        assert "canary_analysis" in output
        assert "1/3" in output

    def test_render_shows_traffic_split(self):
        output = _render(_make_snapshot())
        assert "svc-blue=90" in output
        assert "svc-canary=10" in output

    def test_render_shows_canary_score(self):
        output = _render(_make_snapshot(canary_score=86.66, canary_verdict="marginal"))
        assert "86.7 (marginal)" in output

    def test_render_shows_pending_judgment(self):
        output = _render(
            _make_snapshot(
                status=ExecutionStatus.AWAITING_JUDGMENT, pending_judgment="Ship svc:7?"
            )
        )
        assert "Awaiting judgment" in output
        assert "Ship svc:7?" in output

    def test_render_shows_failure_reason(self):
        output = _render(
            _make_snapshot(status=ExecutionStatus.FAILED, failure_reason="smoke: verification-failure")
        )
        assert "Reason: smoke: verification-failure" in output

    def test_render_shows_rollbacks(self):
        output = _render(_make_snapshot(rollbacks=["rollback_failed"]))
        assert "rollback_failed" in output

    @pytest.mark.parametrize("valid, expected", [(True, "valid"), (False, "BROKEN")])
    def test_render_shows_chain_status(self, valid, expected):
        assert expected in _render(_make_snapshot(chain_valid=valid))


class TestLiveAndPrint:
    def test_render_live_stops_on_terminal_status(self):
        console = Console(width=240, color_system=None)
        calls: list[int] = []

        def snapshot_fn() -> ExecutionSnapshot:
            calls.append(1)
            return _make_snapshot(status=ExecutionStatus.SUCCEEDED)

        with console.capture():
            MonitorRenderer(console=console).render_live(snapshot_fn, refresh_hz=10)
        assert len(calls) == 1

    def test_print_chain_verification(self):
        console = Console(width=240, color_system=None)
        renderer = MonitorRenderer(console=console)

        with console.capture() as capture:
            renderer.print_chain_verification("dx-1", True)
        assert "valid" in capture.get().lower()

        with console.capture() as capture:
            renderer.print_chain_verification("dx-1", False)
        assert "BROKEN" in capture.get()
