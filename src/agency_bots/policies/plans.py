from __future__ import annotations

from agency_bots.domain.errors import UpgradeRequired
from agency_bots.domain.models import PlanLimits, PlanTier

PLAN_ORDER: tuple[PlanTier, ...] = ("free", "starter", "pro", "enterprise", "corporation")
FEATURES: tuple[str, ...] = ("schedule", "extraction", "multimedia", "email", "spreadsheets")

_UNLIMITED_MESSAGES = 999_999

_LIMITS: dict[str, PlanLimits] = {
    "free": PlanLimits(
        daily_messages=20,
        daily_uploads=5,
        max_users=1,
        max_agency_bots=1,
        summarize_threshold=20,
        features=frozenset(),
    ),
    "starter": PlanLimits(
        daily_messages=500,
        daily_uploads=None,
        max_users=5,
        max_agency_bots=1,
        summarize_threshold=30,
        features=frozenset({"schedule", "extraction"}),
    ),
    "pro": PlanLimits(
        daily_messages=_UNLIMITED_MESSAGES,
        daily_uploads=None,
        max_users=15,
        max_agency_bots=3,
        summarize_threshold=40,
        features=frozenset({"schedule", "extraction", "multimedia"}),
    ),
    "enterprise": PlanLimits(
        daily_messages=_UNLIMITED_MESSAGES,
        daily_uploads=None,
        max_users=50,
        max_agency_bots=5,
        summarize_threshold=50,
        features=frozenset({"schedule", "extraction", "multimedia"}),
    ),
    "corporation": PlanLimits(
        daily_messages=_UNLIMITED_MESSAGES,
        daily_uploads=None,
        max_users=100,
        max_agency_bots=10,
        summarize_threshold=60,
        features=frozenset(FEATURES),
    ),
}


def normalize_plan(raw: object) -> PlanTier:
    text = str(raw or "").strip().lower()
    for plan in PLAN_ORDER:
        if text == plan:
            return plan
    return "free"


def limits_for(plan: object) -> PlanLimits:
    return _LIMITS[normalize_plan(plan)]


def feature_enabled(plan: object, feature: str) -> bool:
    return feature in limits_for(plan).features


def require_feature(plan: object, feature: str) -> None:
    """Raise UpgradeRequired unless `plan` unlocks `feature`. Unknown features are never enabled."""
    normalized = normalize_plan(plan)
    if not feature_enabled(normalized, feature):
        raise UpgradeRequired(plan=normalized, feature=feature)


def summarize_threshold(plan: object) -> int:
    return limits_for(plan).summarize_threshold
