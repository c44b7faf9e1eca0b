"""Cleanup stage — destroys a retired server group after a grace period."""

from __future__ import annotations

import logging
from typing import Any

from deployforge.core.errors import InfraError
from deployforge.models.ledger import AuditEvent
from deployforge.models.pipeline import CleanupStageSpec, StageType
from deployforge.models.server_groups import ServerGroupRole
from deployforge.stages.base import BaseStage, StageRun

logger = logging.getLogger(__name__)


class CleanupStage(BaseStage):
    """Never destroys the ACTIVE group; destroy failures are logged only."""

    stage_type = StageType.CLEANUP

    def execute(self, spec: CleanupStageSpec, run: StageRun) -> dict[str, Any]:
        services = self.services
        group_id = run.resolve_group(spec.group)
        group = services.store.get_group(run.context.service, group_id)
        if group is None:
            return {"group_id": group_id, "destroyed": False, "reason": "not registered"}
        if group.role == ServerGroupRole.ACTIVE:
            logger.warning("Refusing to destroy ACTIVE group %s", group_id)
            return {"group_id": group_id, "destroyed": False, "reason": "group is ACTIVE"}

        if spec.grace_seconds:
            run.sleep(spec.grace_seconds)

        try:
            services.infra.destroy(group.handle)
        except InfraError as exc:
            logger.error("Cleanup of %s failed: %s", group_id, exc)
            return {"group_id": group_id, "destroyed": False, "reason": str(exc)}

        with services.store.transaction() as tx:
            services.store.remove_group(run.context.service, group_id, conn=tx)
            self.audit(
                run,
                AuditEvent.SERVER_GROUP_DESTROYED,
                {"group_id": group_id, "role": group.role.value},
                conn=tx,
            )
        return {"group_id": group_id, "destroyed": True}
