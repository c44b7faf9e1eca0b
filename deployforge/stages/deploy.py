"""Deploy stage — creates a server group for the execution's artifact."""

from __future__ import annotations

import logging
from typing import Any

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from deployforge.core.errors import DeployError, InfraError
from deployforge.models.ledger import AuditEvent
from deployforge.models.pipeline import DeployStageSpec, StageType
from deployforge.models.server_groups import DeploySpec, ServerGroup
from deployforge.stages.base import BaseStage, StageRun, group_name

logger = logging.getLogger(__name__)


class DeployStage(BaseStage):
    """Apply a ``DeploySpec`` and register the group as CANDIDATE or CANARY.

    Rejected applies are retried with exponential backoff.  ``apply`` is
    idempotent on the group name, so a retry or a resumed attempt after a
    restart never creates a second group.
    """

    stage_type = StageType.DEPLOY

    def execute(self, spec: DeployStageSpec, run: StageRun) -> dict[str, Any]:
        ctx = run.context
        services = self.services
        retries = spec.retries if "retries" in spec.model_fields_set else services.deploy_retries
        backoff = (
            spec.backoff_seconds
            if "backoff_seconds" in spec.model_fields_set
            else services.deploy_backoff_seconds
        )
        name = group_name(ctx, spec.id)
        deploy_spec = DeploySpec(
            service=ctx.service,
            name=name,
            artifact_id=ctx.artifact.artifact_id,
            environment=spec.environment or ctx.environment,
            replicas=spec.replicas,
            labels={**spec.labels, "execution": ctx.execution_id, "role": spec.role.value},
        )

        prior = int(run.checkpoint.get("attempts", 0))
        attempts = prior

        def log_retry(state: RetryCallState) -> None:
            logger.warning(
                "Deploy of %s rejected (attempt %d/%d), retrying in %.1fs: %s",
                name, attempts, retries + 1,
                state.next_action.sleep if state.next_action else 0.0,
                state.outcome.exception() if state.outcome else None,
            )

        retrying = Retrying(
            stop=stop_after_attempt(max(1, retries + 1 - prior)),
            wait=wait_exponential(multiplier=backoff),
            retry=retry_if_exception_type(InfraError),
            sleep=run.sleep,
            before_sleep=log_retry,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    attempts += 1
                    run.save_checkpoint(attempts=attempts, group_id=name)
                    handle = services.infra.apply(deploy_spec)
        except InfraError as exc:
            raise DeployError(
                f"deploy of {name} failed after {attempts} attempts: {exc}"
            ) from exc

        group = ServerGroup(
            service=ctx.service,
            group_id=name,
            artifact_id=ctx.artifact.artifact_id,
            role=spec.role,
            handle=handle,
            created_by=ctx.execution_id,
        )
        with services.store.transaction() as tx:
            services.store.register_group(group, conn=tx)
            self.audit(
                run,
                AuditEvent.SERVER_GROUP_REGISTERED,
                {
                    "group_id": name,
                    "role": spec.role.value,
                    "handle": handle.model_dump(mode="json"),
                },
                conn=tx,
            )
        run.update_context(lambda current: current.with_group(spec.id, name))
        return {
            "group_id": name,
            "role": spec.role.value,
            "endpoint": handle.endpoint,
            "replicas": handle.replicas,
            "attempts": attempts,
        }
