"""Deployforge: auditable deployment orchestration.

Drives a service's new artifact through a declared pipeline of stages
(deploy, health check, verification, canary analysis, manual judgment,
cutover, cleanup) while recording every transition in a hash-chained
audit ledger.  Exactly one server group per service serves production
traffic, and any failed cutover is rolled back to the previous group.
"""

__version__ = "0.1.0"
__description__ = "Auditable deployment orchestration with canary analysis and rollback"

from deployforge.core.orchestrator import Orchestrator
from deployforge.monitor.projection import ExecutionProjection
from deployforge.cli.app import app as cli

__all__ = ["Orchestrator", "ExecutionProjection", "cli", "__version__"]
