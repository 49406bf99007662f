from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from tenantvault.core.errors import ValidationError


ISOLATION_LEVELS: tuple[str, ...] = ("schema", "database", "row_level")
BACKUP_TYPES: tuple[str, ...] = ("full", "incremental", "differential")
IN_FLIGHT_STATUSES = ("pending", "running")

# Allowed lifecycle moves for backup jobs and restore logs.
STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running", "failed"}),
    "running": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}


@dataclass(frozen=True)
class ResourceLimits:
    max_users: int = 100
    max_storage_mb: int = 1000
    max_api_calls_per_day: int = 10000

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None, *, defaults: ResourceLimits | None = None) -> ResourceLimits:
        base = defaults or cls()
        payload = payload or {}
        values: dict[str, int] = {}
        for field_name, default in asdict(base).items():
            value = payload.get(field_name, default)
            # bool is an int subclass; strings and floats are never coerced.
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(f"Resource limit {field_name} must be a non-negative integer")
            values[field_name] = value
        return cls(**values)

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class UsageDelta:
    # api_calls and bandwidth_mb accumulate; storage_used_mb and active_users are gauges.
    api_calls: int = 0
    storage_used_mb: float = 0.0
    active_users: int = 0
    bandwidth_mb: float = 0.0

