"""Production configuration guard — enforces hard constraints in production.

The guard runs once when the orchestrator is built and fails hard
(raises ``ProductionConfigError``) if any constraint is violated.  Other
code should not scatter ``if is_production`` checks.
"""

from __future__ import annotations

import logging

from deployforge.config import ProdConfig

logger = logging.getLogger(__name__)


class ProductionConfigError(RuntimeError):
    """Raised when production configuration constraints are violated.

    The system cannot safely start in production mode with the current
    configuration.  It must not be caught and ignored.
    """


def enforce_production_constraints(config: ProdConfig) -> None:
    """Validate all production-critical configuration constraints.

    Constraints enforced
    --------------------
    1. Debug mode must be disabled.
    2. An urgent notification channel must be configured, so a failed
       rollback always reaches a human.

    Parameters
    ----------
    config:
        The active ``ProdConfig`` instance.

    Raises
    ------
    ProductionConfigError
        If any production constraint is violated.
    """
    if not config.is_production:
        return

    violations: list[str] = []

    if config.debug:
        violations.append(
            "debug=True is not allowed in production. Set DEPLOYFORGE_DEBUG=false."
        )

    if not config.urgent_channel:
        violations.append(
            "An urgent notification channel is required in production. "
            "Set DEPLOYFORGE_URGENT_CHANNEL."
        )

    if violations:
        msg = (
            "Production configuration guard failed.\n"
            + "\n".join(f"  - {v}" for v in violations)
        )
        logger.critical(msg)
        raise ProductionConfigError(msg)

    logger.info("Production configuration guard passed.")
