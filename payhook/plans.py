from datetime import timedelta
from typing import Mapping, Protocol

from payhook.errors import UnknownPlanError


class PlanCatalog(Protocol):
    def get_duration(self, plan_id: str) -> timedelta:
        ...


class StaticPlanCatalog:
    """Plan durations held in memory, usually built from settings."""

    def __init__(self, durations: Mapping[str, timedelta]):
        self._durations = dict(durations)

    @classmethod
    def from_days(cls, days_by_plan: Mapping[str, int]) -> "StaticPlanCatalog":
        return cls({plan_id: timedelta(days=days) for plan_id, days in days_by_plan.items()})

    def get_duration(self, plan_id: str) -> timedelta:
        try:
            return self._durations[plan_id]
        except KeyError:
            raise UnknownPlanError(f"No duration configured for plan '{plan_id}'.") from None
