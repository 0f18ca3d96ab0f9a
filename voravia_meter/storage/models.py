"""
Data models for storage layer.

Defines the usage ledger entities and the derived daily rollup rows.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class UsageContext:
    """Per-request identity supplied by the surrounding application."""
    actor_user_id: str
    billing_owner_id: str
    mode: str = "individual"
    request_id: Optional[str] = None


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one billable third-party call.

    Append-only events that create an auditable ledger of external costs.
    Once written, these records must never be modified; corrections are
    recorded as new events.
    """
    id: str
    timestamp: datetime
    actor_user_id: str
    billing_owner_id: str
    provider: str
    service: str
    units: int
    unit_cost_usd: float
    cost_usd: float
    mode: str = "individual"
    subject_user_id: Optional[str] = None
    request_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UsageAggregate:
    """Events of one day grouped by the rollup dimensions."""
    billing_owner_id: str
    actor_user_id: str
    subject_user_id: Optional[str]
    provider: str
    service: str
    events: int
    units: int
    cost_usd: float


@dataclass(frozen=True)
class DailyRollup:
    """Pre-computed sums for one (day, owner, actor, subject, provider, service) key.

    Derived from usage events and replaced wholesale whenever the day is
    rolled up again.
    """
    day: date
    billing_owner_id: str
    actor_user_id: str
    subject_user_id: Optional[str]
    provider: str
    service: str
    events: int
    units: int
    cost_usd: float


@dataclass(frozen=True)
class SubjectCost:
    subject_user_id: Optional[str]
    cost_usd: float
    events: int


@dataclass(frozen=True)
class ServiceCost:
    """Cost of one provider/service pair over a window."""
    provider: str
    service: str
    cost_usd: float
    events: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "service": self.service,
            "costUsd": self.cost_usd,
            "events": self.events,
        }
