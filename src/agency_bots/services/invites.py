from __future__ import annotations

from datetime import datetime, timedelta, timezone
import hashlib
import logging
import secrets
from typing import Callable
from uuid import uuid4

from agency_bots.domain.errors import (
    ActorAlreadyExists,
    InvalidInvite,
    InvalidRequest,
    InviteAlreadyAccepted,
    InviteAlreadyOpen,
    InviteNotFound,
)
from agency_bots.domain.interfaces import ActorDirectory, InviteStore, TenantCatalog
from agency_bots.domain.models import Actor, ActorCredential, Invite, IssuedInvite, Tenant
from agency_bots.policies.auth import TenantAuthorizer, normalize_email
from agency_bots.services.members import ensure_seat_available

_logger = logging.getLogger(__name__)

INVITE_TTL = timedelta(days=7)


def hash_invite_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class InviteService:
    """Owner-issued invites. Delivery of the raw token is left to the caller."""

    def __init__(
        self,
        *,
        authorizer: TenantAuthorizer,
        tenants: TenantCatalog,
        actors: ActorDirectory,
        invites: InviteStore,
        ttl: timedelta = INVITE_TTL,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.authorizer = authorizer
        self.tenants = tenants
        self.actors = actors
        self.invites = invites
        self.ttl = ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def create_invite(self, credential: ActorCredential | None, email: str) -> IssuedInvite:
        ctx = await self.authorizer.require_owner(credential)
        email = normalize_email(email)
        if not email or "@" not in email:
            raise InvalidRequest("Missing email")

        if await self.actors.get_actor_by_email(ctx.tenant_id, email) is not None:
            raise ActorAlreadyExists()

        now = self._clock()
        # Open invites reserve a seat until they are accepted, revoked or expire.
        await ensure_seat_available(self.actors, self.invites, ctx.tenant_id, ctx.plan, now)

        if await self.invites.find_open_invite(ctx.tenant_id, email, now) is not None:
            raise InviteAlreadyOpen()

        token = secrets.token_hex(32)
        invite = Invite(
            invite_id=str(uuid4()),
            tenant_id=ctx.tenant_id,
            email=email,
            token_hash=hash_invite_token(token),
            expires_at=now + self.ttl,
            created_by=ctx.actor_id,
            created_at=now,
        )
        await self.invites.add_invite(invite)
        _logger.info("invite_created tenant=%s invite=%s by=%s", ctx.tenant_id, invite.invite_id, ctx.actor_id)
        return IssuedInvite(invite=invite, token=token)

    async def list_invites(self, credential: ActorCredential | None) -> list[Invite]:
        ctx = await self.authorizer.require_owner(credential)
        return await self.invites.list_open_invites(ctx.tenant_id, self._clock())

    async def revoke_invite(self, credential: ActorCredential | None, invite_id: str) -> None:
        ctx = await self.authorizer.require_owner(credential)
        invite_id = (invite_id or "").strip()
        if not invite_id:
            raise InvalidRequest("Missing invite_id")

        invite = await self.invites.get_invite(ctx.tenant_id, invite_id)
        if invite is None:
            raise InviteNotFound()
        if invite.accepted_at is not None or not await self.invites.revoke(ctx.tenant_id, invite_id, self._clock()):
            raise InviteAlreadyAccepted()
        _logger.info("invite_revoked tenant=%s invite=%s by=%s", ctx.tenant_id, invite_id, ctx.actor_id)

    async def accept_invite(self, token: str) -> tuple[Tenant, Actor]:
        """Redeem a token and create the invited actor as a pending member awaiting owner approval."""
        token = (token or "").strip()
        if not token:
            raise InvalidRequest("Missing token")

        now = self._clock()
        invite = await self.invites.get_by_token_hash(hash_invite_token(token))
        if invite is None or not invite.is_open(now):
            raise InvalidInvite()

        tenant = await self.tenants.get_tenant(invite.tenant_id)
        if tenant is None:
            raise InvalidInvite("Invalid invite (agency missing)")

        email = normalize_email(invite.email)
        if await self.actors.get_actor_by_email(invite.tenant_id, email) is not None:
            raise ActorAlreadyExists()

        if not await self.invites.mark_accepted(invite.invite_id, now):
            raise InvalidInvite()
        actor = await self.actors.create_pending_actor(invite.tenant_id, email)
        _logger.info("invite_accepted tenant=%s invite=%s actor=%s", invite.tenant_id, invite.invite_id, actor.actor_id)
        return tenant, actor
