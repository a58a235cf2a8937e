from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any

import jwt

from agency_bots.config import Settings
from agency_bots.domain.errors import ForbiddenNotActive, ForbiddenNotOwner, Unauthenticated
from agency_bots.domain.interfaces import ActorDirectory, TenantCatalog
from agency_bots.domain.models import (
    Actor,
    ActorCredential,
    ActorRole,
    AuthedContext,
    MembershipStatus,
)
from agency_bots.policies.plans import normalize_plan

_logger = logging.getLogger(__name__)


def normalize_role(raw: object) -> ActorRole:
    text = str(raw or "").strip().lower()
    if text == "owner":
        return "owner"
    if text == "admin":
        return "admin"
    return "member"


def normalize_status(raw: object) -> MembershipStatus:
    text = str(raw or "").strip().lower()
    if text == "active":
        return "active"
    if text == "blocked":
        return "blocked"
    return "pending"


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class SessionCredentialResolver:
    """Turns a signed session token into an ActorCredential; anything unverifiable resolves to None."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def resolve(self, authorization: str = "", cookie_token: str = "") -> ActorCredential | None:
        token = _extract_bearer_token(authorization) or (cookie_token or "").strip()
        if not token or not self.settings.session_jwt_secret:
            return None

        try:
            claims: dict[str, Any] = jwt.decode(
                token,
                self.settings.session_jwt_secret,
                algorithms=[self.settings.session_jwt_algorithm],
            )
        except jwt.PyJWTError as err:
            _logger.info("session_token_rejected err=%s", err)
            return None

        tenant_id = str(claims.get("agency_id") or "").strip()
        tenant_email = str(claims.get("agency_email") or "").strip()
        if not tenant_id or not tenant_email:
            return None
        actor_id = str(claims.get("user_id") or "").strip() or None
        return ActorCredential(tenant_id=tenant_id, tenant_email=tenant_email, actor_id=actor_id)

    def issue(self, credential: ActorCredential, ttl: timedelta = timedelta(days=7)) -> str:
        if not self.settings.session_jwt_secret:
            raise RuntimeError("SESSION_JWT_SECRET is required to issue session tokens")
        now = datetime.now(timezone.utc)
        claims: dict[str, Any] = {
            "agency_id": credential.tenant_id,
            "agency_email": credential.tenant_email,
            "iat": now,
            "exp": now + ttl,
        }
        if credential.actor_id:
            claims["user_id"] = credential.actor_id
        return jwt.encode(claims, self.settings.session_jwt_secret, algorithm=self.settings.session_jwt_algorithm)


def _extract_bearer_token(authorization: str) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        return ""
    return authorization.split(" ", 1)[1].strip()


class TenantAuthorizer:
    def __init__(self, tenants: TenantCatalog, actors: ActorDirectory) -> None:
        self.tenants = tenants
        self.actors = actors

    async def resolve_context(self, credential: ActorCredential | None) -> AuthedContext:
        """Resolve tenant, actor, role, status and current plan. Never changes membership status."""
        if credential is None or not credential.tenant_id or not credential.tenant_email:
            raise Unauthenticated()

        tenant = await self.tenants.get_tenant(credential.tenant_id)
        if tenant is None:
            raise Unauthenticated()

        actor = await self._locate_actor(credential)
        return AuthedContext(
            tenant_id=tenant.tenant_id,
            tenant_email=credential.tenant_email,
            actor_id=actor.actor_id,
            role=normalize_role(actor.role),
            status=normalize_status(actor.status),
            plan=normalize_plan(tenant.plan),
        )

    async def require_active_member(self, credential: ActorCredential | None) -> AuthedContext:
        ctx = await self.resolve_context(credential)
        ensure_active(ctx)
        return ctx

    async def require_owner(self, credential: ActorCredential | None) -> AuthedContext:
        ctx = await self.require_active_member(credential)
        ensure_owner(ctx)
        return ctx

    async def ensure_first_owner(self, credential: ActorCredential) -> bool:
        created = await self.actors.bootstrap_owner(credential.tenant_id, normalize_email(credential.tenant_email))
        if created:
            _logger.info("first_owner_bootstrapped tenant=%s", credential.tenant_id)
        return created

    async def login(self, credential: ActorCredential | None) -> AuthedContext:
        if credential is None or await self.tenants.get_tenant(credential.tenant_id) is None:
            raise Unauthenticated()
        await self.ensure_first_owner(credential)
        return await self.resolve_context(credential)

    async def _locate_actor(self, credential: ActorCredential) -> Actor:
        actor: Actor | None = None
        if credential.actor_id:
            actor = await self.actors.get_actor(credential.tenant_id, credential.actor_id)
        if actor is None:
            # Older credentials carry only the agency email.
            actor = await self.actors.get_actor_by_email(credential.tenant_id, normalize_email(credential.tenant_email))
        if actor is None:
            actor = await self.actors.create_pending_actor(credential.tenant_id, normalize_email(credential.tenant_email))
        return actor


def ensure_active(ctx: AuthedContext) -> None:
    if ctx.status != "active":
        raise ForbiddenNotActive()


def ensure_owner(ctx: AuthedContext) -> None:
    ensure_active(ctx)
    if ctx.role != "owner":
        raise ForbiddenNotOwner()
