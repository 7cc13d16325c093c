"""Production configuration guard: enforces hard constraints in production.

Runs once when a RunCoordinator is constructed and fails hard (raises
``ProductionConfigError``) if any constraint is violated.  Other code
should not scatter ``if is_production`` checks.
"""

from __future__ import annotations

import logging

from shipyard.config import ShipyardSettings
from shipyard.core.errors import ProductionConfigError

logger = logging.getLogger(__name__)


def enforce_production_constraints(settings: ShipyardSettings) -> None:
    """Validate production-critical settings.

    Constraints enforced
    --------------------
    1. ``debug`` is off.
    2. ``state_dir`` must be absolute, so the ledger does not depend on the
       working directory the process was started from.
    3. Retry backoff must be non-zero.

    Raises
    ------
    ProductionConfigError
        Listing every violation at once.
    """
    if not settings.is_production:
        return

    violations: list[str] = []

    if settings.debug:
        violations.append(
            "debug=True is not allowed in production. Set SHIPYARD_DEBUG=false."
        )

    if not settings.state_dir.is_absolute():
        violations.append(
            f"state_dir must be an absolute path in production, got {settings.state_dir}. "
            "Set SHIPYARD_STATE_DIR."
        )

    if settings.backoff_base_seconds <= 0:
        violations.append(
            "backoff_base_seconds must be > 0 in production. "
            "Set SHIPYARD_BACKOFF_BASE_SECONDS."
        )

    if violations:
        msg = (
            f"Refusing to start in production ({len(violations)} problem(s)):\n"
            + "\n".join(f"  * {v}" for v in violations)
        )
        logger.critical(msg)
        raise ProductionConfigError(msg)

    logger.info("Production settings accepted.")
