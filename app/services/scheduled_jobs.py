"""
Performance Indicator Platform
Scheduled Jobs.

Concrete job implementations triggered by the external scheduler.

Jobs:
    - overdue_sweep: flags pending/submitted indicators past their due date
"""

from __future__ import annotations

import logging
from typing import Any

from app.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("overdue_sweep")
def sweep_overdue_indicators(app) -> dict[str, Any]:
    """Mark indicators past their due date as overdue and remind assignees."""
    from app.services.indicator_lifecycle import mark_overdue

    results = mark_overdue()
    logger.info("Overdue sweep: %s", results)
    return results
