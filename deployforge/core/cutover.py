"""Traffic/Cutover Controller — the only writer of traffic weights and roles.

Every weight change is one complete map sent in a single request and then
read back.  A mismatch (or a rejected request) restores the map that was in
effect before the change, exactly, and raises ``CutoverFailure``.  If the
restore itself cannot be verified the failure becomes ``RollbackFailure``.

Role changes go through ``ExecutionStore.assign_roles`` together with a
``server_group_roles`` audit record carrying the full role map, so the
ledger alone shows that no instant had two ACTIVE groups.

Cutovers and rollbacks for one service are mutually exclusive.  The lock
is taken before the current weights are read, so a second cutover always
observes the first one's result.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, Literal

from deployforge.adapters import InfraController
from deployforge.core.audit_ledger import AuditLedger
from deployforge.core.errors import (
    CanaryFail,
    CutoverBusy,
    CutoverFailure,
    DeployforgeError,
    InfraError,
    RoleInvariantError,
    RollbackFailure,
)
from deployforge.core.state_store import ExecutionStore
from deployforge.models.artifacts import Artifact
from deployforge.models.canary import CanaryResult, CanaryVerdict
from deployforge.models.execution import ExecutionContext
from deployforge.models.ledger import AuditEvent, AuditRecord
from deployforge.models.server_groups import ServerGroup, ServerGroupRole

logger = logging.getLogger(__name__)

LockPolicy = Literal["block", "fail_fast"]

# Called under the service lock with the ACTIVE group and weights observed
# before the first write; returns the context the cutover continues with.
LockedHook = Callable[[str | None, dict[str, int]], ExecutionContext]


def normalize_weights(weights: dict[str, int]) -> dict[str, int]:
    """Drop zero entries so requested and observed maps compare equal."""
    return {group: int(w) for group, w in weights.items() if w}


class TrafficController:
    """Applies cutovers, canary ramps and rollbacks for every service.

    Parameters
    ----------
    infra:
        Infrastructure controller that owns the real traffic weights.
    store:
        State store holding server group roles.
    ledger:
        Audit ledger; every weight and role change is recorded.
    lock_policy:
        ``"block"`` waits up to *lock_timeout_seconds* for a busy service,
        ``"fail_fast"`` raises ``CutoverBusy`` at once.
    """

    def __init__(
        self,
        infra: InfraController,
        store: ExecutionStore,
        ledger: AuditLedger,
        *,
        lock_policy: LockPolicy = "block",
        lock_timeout_seconds: float = 300.0,
    ) -> None:
        self._infra = infra
        self._store = store
        self._ledger = ledger
        self._lock_policy = lock_policy
        self._lock_timeout = lock_timeout_seconds
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Mutual exclusion
    # ------------------------------------------------------------------

    def _lock_for(self, service: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(service, threading.Lock())

    @contextmanager
    def service_lock(
        self, service: str, policy: LockPolicy | None = None
    ) -> Iterator[None]:
        """Hold the per-service cutover lock for the duration of the block."""
        lock = self._lock_for(service)
        policy = policy or self._lock_policy
        if policy == "fail_fast":
            acquired = lock.acquire(blocking=False)
        else:
            acquired = lock.acquire(timeout=self._lock_timeout)
        if not acquired:
            raise CutoverBusy(f"another cutover for {service} is in progress")
        try:
            yield
        finally:
            lock.release()

    def snapshot(self, service: str) -> tuple[str | None, dict[str, int]]:
        """The service's ACTIVE group and traffic weights right now."""
        active = self._store.active_group(service)
        return (active.group_id if active else None), self._infra.traffic_weights(service)

    # ------------------------------------------------------------------
    # Cutover strategies
    # ------------------------------------------------------------------

    def blue_green(
        self,
        ctx: ExecutionContext,
        candidate: str,
        *,
        stage_id: str = "",
        on_locked: LockedHook | None = None,
    ) -> dict[str, Any]:
        """Move 100% of traffic to *candidate* in one request and promote it."""
        with self.service_lock(ctx.service):
            before = self._infra.traffic_weights(ctx.service)
            active = self._store.active_group(ctx.service)
            active_id = active.group_id if active else None
            if on_locked is not None:
                ctx = on_locked(active_id, before)
            target = {group: 0 for group in before if group != candidate}
            target[candidate] = 100
            self._switch(ctx, stage_id, target, restore=before, purpose="cutover")
            self._promote(ctx, stage_id, candidate, active_id)
            logger.info("Blue/green cutover of %s to %s verified", ctx.service, candidate)
            return {
                "strategy": "blue_green",
                "previous_weights": before,
                "weights": normalize_weights(target),
                "promoted": candidate,
            }

    def canary_ramp(
        self,
        ctx: ExecutionContext,
        canary: str,
        steps: list[int],
        gate: Callable[[int], CanaryResult],
        *,
        stage_id: str = "",
        on_locked: LockedHook | None = None,
    ) -> dict[str, Any]:
        """Step the canary's weight up, gating each step on *gate*.

        *gate* is called with the step just applied and must return a
        canary result; anything but PASS collapses the canary and raises
        ``CanaryFail``.  A gate that raises (a timeout, a cancellation)
        also collapses the canary before the error propagates.  No gate
        runs after the final 100% step.
        """
        with self.service_lock(ctx.service):
            before = self._infra.traffic_weights(ctx.service)
            active = self._store.active_group(ctx.service)
            active_id = active.group_id if active else None
            if on_locked is not None:
                ctx = on_locked(active_id, before)
            gates: list[dict[str, Any]] = []
            ramp = steps if active_id else [100]

            for step in ramp:
                target = {group: 0 for group in before if group not in (canary, active_id)}
                if active_id:
                    target[active_id] = 100 - step
                target[canary] = step
                self._switch(ctx, stage_id, target, restore=before, purpose=f"ramp-{step}")
                if step >= 100:
                    break
                try:
                    result = gate(step)
                except DeployforgeError:
                    self._collapse(ctx, stage_id, canary, before)
                    raise
                gates.append({"step": step, **result.model_dump(mode="json")})
                if result.verdict != CanaryVerdict.PASS:
                    self._collapse(ctx, stage_id, canary, before)
                    raise CanaryFail(
                        f"canary {canary} {result.verdict.value} at {step}%"
                        + (f": {result.reason}" if result.reason else "")
                    )

            self._promote(ctx, stage_id, canary, active_id)
            logger.info("Canary ramp of %s to %s completed", ctx.service, canary)
            return {
                "strategy": "canary_ramp",
                "previous_weights": before,
                "steps": ramp,
                "gates": gates,
                "promoted": canary,
            }

    def collapse_canary(
        self, ctx: ExecutionContext, canary: str, *, stage_id: str = ""
    ) -> None:
        """Take all traffic off *canary*, disable it and scale it to zero."""
        with self.service_lock(ctx.service):
            current = self._infra.traffic_weights(ctx.service)
            restore = dict(current)
            share = restore.pop(canary, 0)
            if share:
                active = self._store.active_group(ctx.service)
                if active is None:
                    raise RollbackFailure(
                        f"cannot take traffic off canary {canary}: {ctx.service} has no ACTIVE group"
                    )
                restore[active.group_id] = restore.get(active.group_id, 0) + share
            self._collapse(ctx, stage_id, canary, restore)

    def adopt(self, group: ServerGroup, *, actor: str = "operator") -> dict[str, str]:
        """Make an existing, externally created group the service's ACTIVE group.

        Used once per service to bring a running production group under
        management.  If nothing receives traffic yet the group gets 100%.
        Returns the service's role map.
        """
        ctx = ExecutionContext(
            execution_id=f"bootstrap:{group.service}",
            service=group.service,
            artifact=Artifact(service=group.service, artifact_id=group.artifact_id),
            actor=actor,
        )
        with self.service_lock(group.service):
            current = self._store.active_group(group.service)
            with self._store.transaction() as tx:
                self._store.register_group(
                    group.model_copy(update={"role": ServerGroupRole.DISABLED}), conn=tx
                )
                self._ledger.append(
                    AuditRecord(
                        execution_id=ctx.execution_id,
                        event=AuditEvent.SERVER_GROUP_REGISTERED,
                        actor=actor,
                        payload={"group_id": group.group_id, "handle": group.handle.model_dump()},
                        service=group.service,
                        artifact_id=group.artifact_id,
                    ),
                    conn=tx,
                )
            before = self._infra.traffic_weights(group.service)
            if not normalize_weights(before):
                self._switch(ctx, "", {group.group_id: 100}, restore=before, purpose="adopt")
            previous = current.group_id if current else None
            self._promote(ctx, "", group.group_id, previous)
        logger.info("Adopted %s as ACTIVE group of %s", group.group_id, group.service)
        return self._store.role_map(group.service)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback(
        self, ctx: ExecutionContext, *, actor: str = "system", reason: str = "", stage_id: str = ""
    ) -> None:
        """Restore the execution's baseline weights and roles.

        The rollback target becomes ACTIVE again and every group the
        execution created becomes DISABLED.  Raises ``RollbackFailure`` if
        the result cannot be applied or verified.
        """
        self._audit(
            ctx,
            AuditEvent.ROLLBACK_STARTED,
            {
                "reason": reason,
                "baseline_weights": ctx.baseline_weights,
                "rollback_target": ctx.rollback_target,
            },
            stage_id=stage_id,
            actor=actor,
        )
        try:
            with self.service_lock(ctx.service, policy="block"):
                self._restore(ctx, stage_id, ctx.baseline_weights, purpose="rollback")
                roles: dict[str, ServerGroupRole] = {}
                for group_id in ctx.created_groups:
                    if self._store.get_group(ctx.service, group_id) is not None:
                        roles[group_id] = ServerGroupRole.DISABLED
                if ctx.rollback_target:
                    if self._store.get_group(ctx.service, ctx.rollback_target) is None:
                        raise RollbackFailure(
                            f"rollback target {ctx.rollback_target} no longer exists"
                        )
                    roles[ctx.rollback_target] = ServerGroupRole.ACTIVE
                self._assign_roles(ctx, stage_id, roles, actor=actor)
        except (RollbackFailure, CutoverBusy, RoleInvariantError, InfraError) as exc:
            logger.critical("Rollback of %s failed: %s", ctx.execution_id, exc)
            self._audit(
                ctx,
                AuditEvent.ROLLBACK_FAILED,
                {"error": str(exc)},
                stage_id=stage_id,
                actor=actor,
            )
            if isinstance(exc, RollbackFailure):
                raise
            raise RollbackFailure(str(exc)) from exc

        self._audit(
            ctx,
            AuditEvent.ROLLBACK_COMPLETED,
            {
                "weights": normalize_weights(ctx.baseline_weights),
                "active": ctx.rollback_target,
            },
            stage_id=stage_id,
            actor=actor,
        )
        logger.warning("Rolled back %s (%s)", ctx.execution_id, reason or "no reason given")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _switch(
        self,
        ctx: ExecutionContext,
        stage_id: str,
        target: dict[str, int],
        *,
        restore: dict[str, int],
        purpose: str,
    ) -> None:
        """Apply *target* and verify it; on failure put *restore* back."""
        failure = self._apply_and_verify(ctx, stage_id, target, purpose)
        if failure is None:
            return
        logger.error("Cutover of %s failed: %s", ctx.service, failure)
        self._restore(ctx, stage_id, restore, purpose="restore")
        raise CutoverFailure(failure)

    def _restore(
        self, ctx: ExecutionContext, stage_id: str, weights: dict[str, int], *, purpose: str
    ) -> None:
        failure = self._apply_and_verify(ctx, stage_id, weights, purpose)
        if failure is not None:
            raise RollbackFailure(f"could not restore weights {weights}: {failure}")

    def _apply_and_verify(
        self, ctx: ExecutionContext, stage_id: str, weights: dict[str, int], purpose: str
    ) -> str | None:
        """Return None on verified success, else a description of the failure."""
        observed: dict[str, int] | None = None
        try:
            self._infra.set_traffic_weights(ctx.service, dict(weights))
            observed = self._infra.traffic_weights(ctx.service)
        except InfraError as exc:
            failure: str | None = f"weight request failed: {exc}"
        else:
            if normalize_weights(observed) == normalize_weights(weights):
                failure = None
            else:
                failure = f"read-back mismatch: requested {weights}, observed {observed}"
        self._audit(
            ctx,
            AuditEvent.TRAFFIC_WEIGHTS,
            {
                "purpose": purpose,
                "requested": normalize_weights(weights),
                "observed": observed,
                "verified": failure is None,
            },
            stage_id=stage_id,
        )
        return failure

    def _promote(
        self, ctx: ExecutionContext, stage_id: str, group_id: str, previous: str | None
    ) -> None:
        roles = {group_id: ServerGroupRole.ACTIVE}
        if previous and previous != group_id:
            roles[previous] = ServerGroupRole.DISABLED
        self._assign_roles(ctx, stage_id, roles)

    def _collapse(
        self, ctx: ExecutionContext, stage_id: str, canary: str, restore: dict[str, int]
    ) -> None:
        self._restore(ctx, stage_id, restore, purpose="collapse")
        self._assign_roles(ctx, stage_id, {canary: ServerGroupRole.DISABLED})
        group = self._store.get_group(ctx.service, canary)
        if group is not None:
            try:
                self._infra.scale(group.handle, 0)
            except InfraError as exc:
                logger.error("Could not scale down canary %s: %s", canary, exc)
        logger.warning("Collapsed canary %s for %s", canary, ctx.service)

    def _assign_roles(
        self,
        ctx: ExecutionContext,
        stage_id: str,
        roles: dict[str, ServerGroupRole],
        *,
        actor: str = "system",
    ) -> None:
        if not roles:
            return
        with self._store.transaction() as tx:
            role_map = self._store.assign_roles(ctx.service, roles, conn=tx)
            self._ledger.append(
                AuditRecord(
                    execution_id=ctx.execution_id,
                    stage_id=stage_id,
                    event=AuditEvent.SERVER_GROUP_ROLES,
                    actor=actor,
                    payload={
                        "assigned": {g: r.value for g, r in roles.items()},
                        "roles": role_map,
                    },
                    service=ctx.service,
                    artifact_id=ctx.artifact.artifact_id,
                ),
                conn=tx,
            )

    def _audit(
        self,
        ctx: ExecutionContext,
        event: AuditEvent,
        payload: dict[str, Any],
        *,
        stage_id: str = "",
        actor: str = "system",
    ) -> None:
        self._ledger.append(
            AuditRecord(
                execution_id=ctx.execution_id,
                stage_id=stage_id,
                event=event,
                actor=actor,
                payload=payload,
                service=ctx.service,
                artifact_id=ctx.artifact.artifact_id,
            )
        )
