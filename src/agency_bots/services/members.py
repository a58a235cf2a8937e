from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Callable

from agency_bots.domain.errors import ActorNotFound, InvalidMemberUpdate, SeatLimitExceeded, SelfLockout
from agency_bots.domain.interfaces import ActorDirectory, InviteStore
from agency_bots.domain.models import Actor, ActorCredential
from agency_bots.policies.auth import TenantAuthorizer, normalize_role, normalize_status
from agency_bots.policies.plans import limits_for

_logger = logging.getLogger(__name__)

ROLES = frozenset({"owner", "admin", "member"})
STATUSES = frozenset({"pending", "active", "blocked"})


def _is_billable(actor: Actor) -> bool:
    return normalize_status(actor.status) != "blocked" and normalize_role(actor.role) == "member"


async def ensure_seat_available(
    actors: ActorDirectory,
    invites: InviteStore | None,
    tenant_id: str,
    plan: str,
    now: datetime,
) -> None:
    """Raise SeatLimitExceeded when billable members plus open invites already fill the plan."""
    cap = limits_for(plan).max_users
    if cap is None:
        return
    used = await actors.count_billable_seats(tenant_id)
    pending_invites = await invites.count_open_invites(tenant_id, now) if invites is not None else 0
    if used + pending_invites >= cap:
        raise SeatLimitExceeded(plan=plan, used=used, pending_invites=pending_invites, limit=cap)


class MemberAdministration:
    """Owner-only membership changes: approve, block, promote."""

    def __init__(
        self,
        authorizer: TenantAuthorizer,
        actors: ActorDirectory,
        invites: InviteStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.authorizer = authorizer
        self.actors = actors
        self.invites = invites
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def list_members(self, credential: ActorCredential | None) -> list[Actor]:
        ctx = await self.authorizer.require_owner(credential)
        members = await self.actors.list_actors(ctx.tenant_id)
        return [
            member.model_copy(update={"role": normalize_role(member.role), "status": normalize_status(member.status)})
            for member in members
        ]

    async def update_member(
        self,
        credential: ActorCredential | None,
        target_actor_id: str,
        role: str,
        status: str,
    ) -> Actor:
        ctx = await self.authorizer.require_owner(credential)

        role = (role or "").strip().lower()
        status = (status or "").strip().lower()
        if role not in ROLES or status not in STATUSES:
            raise InvalidMemberUpdate(role=role, status=status)

        if target_actor_id == ctx.actor_id and (role != "owner" or status != "active"):
            raise SelfLockout()

        target = await self.actors.get_actor(ctx.tenant_id, target_actor_id)
        if target is None:
            raise ActorNotFound()

        # Only a move from non-billable to billable adds a seat.
        takes_seat = role == "member" and status != "blocked"
        if takes_seat and not _is_billable(target):
            await ensure_seat_available(self.actors, self.invites, ctx.tenant_id, ctx.plan, self._clock())

        updated = await self.actors.update_actor(ctx.tenant_id, target_actor_id, role, status)
        if updated is None:
            raise ActorNotFound()
        _logger.info(
            "member_updated tenant=%s target=%s role=%s status=%s by=%s",
            ctx.tenant_id,
            target_actor_id,
            role,
            status,
            ctx.actor_id,
        )
        return updated
