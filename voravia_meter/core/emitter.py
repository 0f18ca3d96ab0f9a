"""
Usage event emission.

Single entry point producers call after a billable operation succeeded.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from voravia_meter.storage.db import DEFAULT_DB_PATH, to_utc
from voravia_meter.storage.models import UsageContext, UsageEvent
from voravia_meter.storage.repository import UsageRepository

from .window import utc_now


def emit_usage_event(
    context: UsageContext,
    *,
    provider: str,
    service: str,
    units: int,
    unit_cost_usd: float,
    cost_usd: float,
    subject_user_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    db_path: str = DEFAULT_DB_PATH,
    repository: Optional[UsageRepository] = None,
    timestamp: Optional[datetime] = None,
) -> UsageEvent:
    """Record one billable call in the usage ledger.

    Only call this once the external operation has succeeded; a failed call
    must not be charged.

    Args:
        context: Request identity (actor, billing owner, mode, request id)
        provider: External service name
        service: Billable operation
        units: Billable units consumed
        unit_cost_usd: Cost of one unit
        cost_usd: Total cost of the call
        subject_user_id: Who the call was about, if anyone
        metadata: Opaque payload stored as-is
        db_path: Path to SQLite database file
        repository: Event store to write to (defaults to one on db_path)
        timestamp: Event time (defaults to now, UTC)

    Returns:
        The persisted event

    Raises:
        sqlite3.Error: If the insert fails; nothing is retried here
    """
    event = UsageEvent(
        id=uuid.uuid4().hex,
        timestamp=to_utc(timestamp) if timestamp is not None else utc_now(),
        request_id=context.request_id,
        actor_user_id=context.actor_user_id,
        billing_owner_id=context.billing_owner_id,
        subject_user_id=subject_user_id or None,
        mode=context.mode,
        provider=provider,
        service=service,
        units=int(units),
        unit_cost_usd=float(unit_cost_usd),
        cost_usd=float(cost_usd),
        metadata=dict(metadata or {}),
    )
    repository = repository or UsageRepository(db_path)
    return repository.insert(event)
