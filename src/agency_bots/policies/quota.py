from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from agency_bots.domain.errors import DailyLimitExceeded, UploadLimitExceeded
from agency_bots.domain.interfaces import QuotaLedger
from agency_bots.domain.models import DailyUsage, UsageSnapshot
from agency_bots.policies.plans import limits_for, normalize_plan


def utc_day(now: datetime | None = None) -> str:
    moment = now or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d")


class QuotaService:
    """Daily message/upload enforcement over a QuotaLedger.

    Enforcement only reads. Callers commit with `record_*` once the guarded action
    has fully succeeded, so failed or abandoned requests never consume quota.
    """

    def __init__(self, ledger: QuotaLedger, clock: Callable[[], datetime] | None = None) -> None:
        self.ledger = ledger
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def today(self) -> str:
        return utc_day(self._clock())

    async def enforce_daily_limit(self, tenant_id: str, plan: object) -> DailyUsage:
        normalized = normalize_plan(plan)
        cap = limits_for(normalized).daily_messages
        usage = await self.ledger.get_daily_usage(tenant_id, self.today())
        if cap is not None and usage.messages_count >= cap:
            raise DailyLimitExceeded(used=usage.messages_count, cap=cap, plan=normalized)
        return usage

    async def enforce_upload_limit(self, tenant_id: str, plan: object, incoming: int = 1) -> DailyUsage:
        normalized = normalize_plan(plan)
        cap = limits_for(normalized).daily_uploads
        usage = await self.ledger.get_daily_usage(tenant_id, self.today())
        if cap is not None and usage.uploads_count + max(incoming, 1) > cap:
            raise UploadLimitExceeded(used=usage.uploads_count, cap=cap, plan=normalized)
        return usage

    async def record_message(self, tenant_id: str) -> DailyUsage:
        return await self.ledger.increment_messages(tenant_id, self.today(), 1)

    async def record_uploads(self, tenant_id: str, count: int) -> DailyUsage:
        return await self.ledger.increment_uploads(tenant_id, self.today(), count)

    async def snapshot(self, tenant_id: str, plan: object) -> UsageSnapshot:
        normalized = normalize_plan(plan)
        limits = limits_for(normalized)
        day = self.today()
        usage = await self.ledger.get_daily_usage(tenant_id, day)
        return UsageSnapshot(
            plan=normalized,
            day=day,
            messages_used_today=usage.messages_count,
            messages_cap_today=limits.daily_messages,
            uploads_used_today=usage.uploads_count,
            uploads_cap_today=limits.daily_uploads,
        )


def remaining_messages(plan: object, usage: DailyUsage) -> int:
    return max(limits_for(plan).daily_messages - usage.messages_count, 0)
