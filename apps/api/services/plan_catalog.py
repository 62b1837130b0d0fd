"""Read-only catalog of purchasable credit packs."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Optional

from config import settings
from services.errors import api_error


@dataclass(frozen=True)
class Plan:
    plan_id: str
    name: str
    description: str
    credits: int
    amount: int  # minor currency units
    currency: str
    popular: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["price_formatted"] = f"{self.amount / 100:.2f} {self.currency.upper()}"
        return payload


class PlanCatalog:
    """Immutable plan lookup keyed by plan id."""

    def __init__(self, plans: Iterable[Plan]):
        self._plans = MappingProxyType({plan.plan_id: plan for plan in plans})

    def get(self, plan_id: Optional[str]) -> Optional[Plan]:
        if not plan_id:
            return None
        return self._plans.get(plan_id)

    def require(self, plan_id: Optional[str]) -> Plan:
        plan = self.get(plan_id)
        if plan is None:
            raise api_error(400, "INVALID_PLAN", "Invalid plan selected")
        return plan

    def list_plans(self) -> List[Plan]:
        return list(self._plans.values())

    def __contains__(self, plan_id: object) -> bool:
        return plan_id in self._plans


def build_default_catalog(currency: str) -> PlanCatalog:
    code = (currency or "usd").strip().lower()
    return PlanCatalog(
        [
            Plan(
                plan_id="starter",
                name="Starter Pack",
                description="500 credits for casual users",
                credits=500,
                amount=499,
                currency=code,
            ),
            Plan(
                plan_id="pro",
                name="Pro Pack",
                description="2000 credits - Best value!",
                credits=2000,
                amount=1499,
                currency=code,
                popular=True,
            ),
            Plan(
                plan_id="ultimate",
                name="Ultimate Pack",
                description="5000 credits for power users",
                credits=5000,
                amount=2999,
                currency=code,
            ),
        ]
    )


@lru_cache(maxsize=1)
def get_plan_catalog() -> PlanCatalog:
    """FastAPI dependency returning the shared plan catalog."""
    return build_default_catalog(settings.BILLING_CURRENCY)
