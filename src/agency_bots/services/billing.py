from __future__ import annotations

import logging

from agency_bots.domain.errors import TenantNotFound
from agency_bots.domain.interfaces import TenantCatalog
from agency_bots.domain.models import PlanTier
from agency_bots.policies.plans import normalize_plan

_logger = logging.getLogger(__name__)


class BillingPlanCallback:
    """Plan assignment from the payment provider. Requests read the plan fresh, so no cache to bust."""

    def __init__(self, tenants: TenantCatalog) -> None:
        self.tenants = tenants

    async def apply_plan(self, tenant_id: str, raw_plan: str | None) -> PlanTier:
        plan = normalize_plan(raw_plan)
        if not await self.tenants.set_plan(tenant_id, plan):
            raise TenantNotFound(tenant_id=tenant_id)
        _logger.info("tenant_plan_applied tenant=%s plan=%s raw=%s", tenant_id, plan, raw_plan)
        return plan

    async def cancel_subscription(self, tenant_id: str) -> PlanTier:
        return await self.apply_plan(tenant_id, "free")
