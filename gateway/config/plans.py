"""Plan limits loaded from plans.yaml.

This is the gateway's view of the billing system: it only answers
``get_limit(plan)``; plan assignment and payment live elsewhere.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
import yaml

logger = structlog.get_logger()

_PLANS_PATH = Path(__file__).parent / "plans.yaml"

UNLIMITED = -1


@dataclass(frozen=True)
class PlanLimits:
    """Quota set for one plan tier."""

    plan: str
    requests_per_window: int
    window_seconds: int
    monthly_requests: int
    max_connections: int
    max_domains: int
    audit_retention_days: int

    def allows_more_connections(self, current: int) -> bool:
        return self.max_connections == UNLIMITED or current < self.max_connections

    def allows_more_domains(self, current: int) -> bool:
        return self.max_domains == UNLIMITED or current < self.max_domains


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load the YAML plan table, returning an empty dict if the file is missing."""
    if not path.exists():
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


class PlanTable:
    """Lookup of plan name -> PlanLimits with a default for unknown plans."""

    def __init__(self, raw: dict[str, Any]) -> None:
        plans = raw.get("plans") or {}
        self._limits: dict[str, PlanLimits] = {}
        for name, values in plans.items():
            self._limits[name] = PlanLimits(
                plan=name,
                requests_per_window=int(values["requests_per_window"]),
                window_seconds=int(values["window_seconds"]),
                monthly_requests=int(values["monthly_requests"]),
                max_connections=int(values["max_connections"]),
                max_domains=int(values.get("max_domains", 0)),
                audit_retention_days=int(values.get("audit_retention_days", 30)),
            )
        self.default_plan = raw.get("default_plan", "free")
        if self.default_plan not in self._limits:
            raise ValueError(f"default_plan {self.default_plan!r} is not defined")

    @classmethod
    def from_file(cls, path: Path = _PLANS_PATH) -> PlanTable:
        table = cls(_load_yaml(path))
        logger.info("plans_loaded", plans=sorted(table._limits), default=table.default_plan)
        return table

    def get_limit(self, plan: str | None) -> PlanLimits:
        """Return limits for *plan*, falling back to the default plan."""
        if plan and plan in self._limits:
            return self._limits[plan]
        if plan:
            logger.warning("plan_unknown", plan=plan, fallback=self.default_plan)
        return self._limits[self.default_plan]

    def names(self) -> list[str]:
        return list(self._limits)


_table: PlanTable | None = None


def get_plan_table() -> PlanTable:
    """Get or load the singleton plan table."""
    global _table
    if _table is None:
        _table = PlanTable.from_file()
    return _table
