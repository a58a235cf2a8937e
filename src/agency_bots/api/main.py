from __future__ import annotations

from dataclasses import dataclass
import hmac
import logging

from fastapi import Depends, FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse

from agency_bots.adapters.foundry import FoundryKnowledgeIndex
from agency_bots.adapters.storage import (
    InMemoryActorDirectory,
    InMemoryBotCatalog,
    InMemoryConversationStore,
    InMemoryDocumentCatalog,
    InMemoryInviteStore,
    InMemoryQuotaLedger,
    InMemoryTenantCatalog,
)
from agency_bots.config import Settings, get_settings
from agency_bots.domain.errors import (
    ActorAlreadyExists,
    ActorNotFound,
    AgencyBotsError,
    BotForbidden,
    BotLimitExceeded,
    BotNotFound,
    DailyLimitExceeded,
    DocumentNotFound,
    ExternalCapabilityFailure,
    ForbiddenNotActive,
    ForbiddenNotOwner,
    IndexMissing,
    InvalidInvite,
    InvalidMemberUpdate,
    InvalidRequest,
    InviteAlreadyAccepted,
    InviteAlreadyOpen,
    InviteNotFound,
    SeatLimitExceeded,
    SelfLockout,
    TenantNotFound,
    Unauthenticated,
    UpgradeRequired,
    UploadLimitExceeded,
)
from agency_bots.domain.interfaces import (
    ActorDirectory,
    BotCatalog,
    ConversationStore,
    DocumentCatalog,
    InviteStore,
    KnowledgeIndex,
    QuotaLedger,
    TenantCatalog,
)
from agency_bots.domain.models import (
    AcceptInviteRequest,
    Actor,
    ActorCredential,
    Bot,
    ChatReply,
    ChatRequest,
    CreateBotRequest,
    CreateInviteRequest,
    Document,
    MeResponse,
    PlanCallbackRequest,
    ResetConversationRequest,
    UpdateMemberRequest,
    UploadPayload,
)
from agency_bots.policies.auth import SessionCredentialResolver, TenantAuthorizer
from agency_bots.policies.bot_access import BotAccessGuard, CleanupStep
from agency_bots.policies.plans import require_feature
from agency_bots.policies.quota import QuotaService
from agency_bots.services.billing import BillingPlanCallback
from agency_bots.services.bots import BotService
from agency_bots.services.chat import ChatOrchestrator
from agency_bots.services.documents import DocumentService
from agency_bots.services.invites import InviteService
from agency_bots.services.members import MemberAdministration
from agency_bots.services.summarizer import ConversationSummarizer
from agency_bots.services.uploads import UploadService

_logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    tenants: TenantCatalog
    actors: ActorDirectory
    bots: BotCatalog
    documents: DocumentCatalog
    invites: InviteStore
    conversations: ConversationStore
    ledger: QuotaLedger
    knowledge: KnowledgeIndex
    credentials: SessionCredentialResolver
    authorizer: TenantAuthorizer
    quota: QuotaService
    guard: BotAccessGuard
    chat: ChatOrchestrator
    bot_service: BotService
    members: MemberAdministration
    invite_service: InviteService
    uploads: UploadService
    document_service: DocumentService
    billing: BillingPlanCallback


_STATUS_BY_ERROR: tuple[tuple[type[AgencyBotsError], int], ...] = (
    (Unauthenticated, 401),
    (InvalidRequest, 400),
    (InvalidMemberUpdate, 400),
    (InvalidInvite, 400),
    (SelfLockout, 400),
    (ForbiddenNotActive, 403),
    (ForbiddenNotOwner, 403),
    (BotForbidden, 403),
    (UpgradeRequired, 403),
    (SeatLimitExceeded, 403),
    (BotLimitExceeded, 403),
    (BotNotFound, 404),
    (ActorNotFound, 404),
    (TenantNotFound, 404),
    (DocumentNotFound, 404),
    (InviteNotFound, 404),
    (IndexMissing, 409),
    (ActorAlreadyExists, 409),
    (InviteAlreadyOpen, 409),
    (InviteAlreadyAccepted, 409),
    (DailyLimitExceeded, 429),
    (UploadLimitExceeded, 429),
    (ExternalCapabilityFailure, 502),
)


def status_for(err: AgencyBotsError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(err, error_type):
            return status_code
    return 500


def _build_context(settings: Settings, knowledge: KnowledgeIndex | None = None) -> AppContext:
    related_cleanups: list[CleanupStep] = []
    document_cleanups: list[CleanupStep] = []
    if settings.database_dsn:
        from agency_bots.adapters.postgres import (
            SqlActorDirectory,
            SqlBotCatalog,
            SqlConversationStore,
            SqlDocumentCatalog,
            SqlInviteStore,
            SqlQuotaLedger,
            SqlSessionFactory,
            SqlTenantCatalog,
            related_document_cleanups,
            related_table_cleanups,
        )

        sf = SqlSessionFactory(settings.database_dsn)
        tenants: TenantCatalog = SqlTenantCatalog(sf)
        actors: ActorDirectory = SqlActorDirectory(sf)
        bots: BotCatalog = SqlBotCatalog(sf)
        documents: DocumentCatalog = SqlDocumentCatalog(sf)
        invites: InviteStore = SqlInviteStore(sf)
        conversations: ConversationStore = SqlConversationStore(sf)
        ledger: QuotaLedger = SqlQuotaLedger(sf)
        related_cleanups = related_table_cleanups(sf)
        document_cleanups = related_document_cleanups(sf)
    else:
        tenants = InMemoryTenantCatalog()
        actors = InMemoryActorDirectory()
        bots = InMemoryBotCatalog()
        documents = InMemoryDocumentCatalog()
        invites = InMemoryInviteStore()
        conversations = InMemoryConversationStore()
        ledger = InMemoryQuotaLedger()

    knowledge = knowledge or FoundryKnowledgeIndex(settings)
    authorizer = TenantAuthorizer(tenants, actors)
    quota = QuotaService(ledger)
    guard = BotAccessGuard(bots, documents, conversations, knowledge, related_cleanups)

    return AppContext(
        settings=settings,
        tenants=tenants,
        actors=actors,
        bots=bots,
        documents=documents,
        invites=invites,
        conversations=conversations,
        ledger=ledger,
        knowledge=knowledge,
        credentials=SessionCredentialResolver(settings),
        authorizer=authorizer,
        quota=quota,
        guard=guard,
        chat=ChatOrchestrator(
            authorizer=authorizer,
            quota=quota,
            guard=guard,
            conversations=conversations,
            summarizer=ConversationSummarizer(conversations, knowledge),
            knowledge=knowledge,
            time_zone=settings.time_zone,
        ),
        bot_service=BotService(authorizer, bots, guard, knowledge),
        members=MemberAdministration(authorizer, actors, invites),
        invite_service=InviteService(authorizer=authorizer, tenants=tenants, actors=actors, invites=invites),
        uploads=UploadService(
            authorizer=authorizer,
            quota=quota,
            guard=guard,
            documents=documents,
            knowledge=knowledge,
            poll_interval_seconds=settings.index_poll_interval_seconds,
            timeout_seconds=settings.index_timeout_seconds,
        ),
        document_service=DocumentService(
            authorizer=authorizer,
            guard=guard,
            documents=documents,
            knowledge=knowledge,
            related_cleanups=document_cleanups,
        ),
        billing=BillingPlanCallback(tenants),
    )


def create_app(settings: Settings | None = None, knowledge: KnowledgeIndex | None = None) -> FastAPI:
    active_settings = settings or get_settings()
    ctx = _build_context(active_settings, knowledge=knowledge)

    app = FastAPI(title="Agency Bots", version="0.1.0")
    app.state.ctx = ctx

    @app.exception_handler(AgencyBotsError)
    async def agency_error_handler(_request: Request, err: AgencyBotsError) -> JSONResponse:
        status_code = status_for(err)
        if status_code >= 500:
            _logger.error("request_failed code=%s err=%s", err.code, err)
        return JSONResponse(status_code=status_code, content=err.detail())

    def current_credential(
        request: Request,
        authorization: str = Header(default="", alias="Authorization"),
    ) -> ActorCredential | None:
        cookie_token = request.cookies.get(ctx.settings.session_cookie_name, "")
        return ctx.credentials.resolve(authorization=authorization, cookie_token=cookie_token)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/v1/auth/login")
    async def login(credential: ActorCredential | None = Depends(current_credential)) -> dict:
        authed = await ctx.authorizer.login(credential)
        token = ctx.credentials.issue(
            ActorCredential(tenant_id=authed.tenant_id, tenant_email=authed.tenant_email, actor_id=authed.actor_id)
        )
        return {
            "tenant_id": authed.tenant_id,
            "actor_id": authed.actor_id,
            "role": authed.role,
            "status": authed.status,
            "plan": authed.plan,
            "session_token": token,
        }

    @app.get("/v1/me", response_model=MeResponse)
    async def me(credential: ActorCredential | None = Depends(current_credential)) -> MeResponse:
        authed = await ctx.authorizer.require_active_member(credential)
        actor = await ctx.actors.get_actor(authed.tenant_id, authed.actor_id)
        return MeResponse(
            tenant_id=authed.tenant_id,
            actor_id=authed.actor_id,
            email=actor.email if actor else authed.tenant_email,
            role=authed.role,
            status=authed.status,
            usage=await ctx.quota.snapshot(authed.tenant_id, authed.plan),
        )

    @app.post("/v1/chat", response_model=ChatReply)
    async def chat(
        request: ChatRequest,
        credential: ActorCredential | None = Depends(current_credential),
    ) -> ChatReply:
        return await ctx.chat.send_message(credential, request.bot_id, request.message)

    @app.post("/v1/conversation/reset")
    async def reset_conversation(
        request: ResetConversationRequest,
        credential: ActorCredential | None = Depends(current_credential),
    ) -> dict:
        await ctx.chat.reset_conversation(credential, request.bot_id)
        return {"ok": True, "bot_id": request.bot_id}

    @app.get("/v1/bots", response_model=list[Bot])
    async def list_bots(credential: ActorCredential | None = Depends(current_credential)) -> list[Bot]:
        return await ctx.bot_service.list_bots(credential)

    @app.post("/v1/bots", response_model=Bot, status_code=201)
    async def create_bot(
        request: CreateBotRequest,
        credential: ActorCredential | None = Depends(current_credential),
    ) -> Bot:
        return await ctx.bot_service.create_agency_bot(credential, request.name, request.description)

    @app.post("/v1/bots/private", response_model=Bot)
    async def private_bot(credential: ActorCredential | None = Depends(current_credential)) -> Bot:
        return await ctx.bot_service.get_or_create_private_bot(credential)

    @app.delete("/v1/bots/{bot_id}")
    async def delete_bot(bot_id: str, credential: ActorCredential | None = Depends(current_credential)) -> dict:
        await ctx.bot_service.delete_bot(credential, bot_id)
        return {"ok": True}

    @app.post("/v1/bots/{bot_id}/documents", response_model=list[Document])
    async def upload_documents(
        bot_id: str,
        files: list[UploadFile] = File(...),
        credential: ActorCredential | None = Depends(current_credential),
    ) -> list[Document]:
        payloads = [UploadPayload(filename=upload.filename or "upload", content=await upload.read()) for upload in files]
        return await ctx.uploads.upload_documents(credential, bot_id, payloads)

    @app.get("/v1/bots/{bot_id}/documents", response_model=list[Document])
    async def list_documents(bot_id: str, credential: ActorCredential | None = Depends(current_credential)) -> list[Document]:
        return await ctx.document_service.list_documents(credential, bot_id)

    @app.delete("/v1/documents/{document_id}")
    async def delete_document(document_id: str, credential: ActorCredential | None = Depends(current_credential)) -> dict:
        await ctx.document_service.delete_document(credential, document_id)
        return {"ok": True}

    @app.get("/v1/members", response_model=list[Actor])
    async def list_members(credential: ActorCredential | None = Depends(current_credential)) -> list[Actor]:
        return await ctx.members.list_members(credential)

    @app.post("/v1/members/update", response_model=Actor)
    async def update_member(
        request: UpdateMemberRequest,
        credential: ActorCredential | None = Depends(current_credential),
    ) -> Actor:
        return await ctx.members.update_member(credential, request.user_id, request.role, request.status)

    @app.get("/v1/invites")
    async def list_invites(credential: ActorCredential | None = Depends(current_credential)) -> list[dict]:
        invites = await ctx.invite_service.list_invites(credential)
        return [invite.model_dump(mode="json", exclude={"token_hash"}) for invite in invites]

    @app.post("/v1/invites", status_code=201)
    async def create_invite(
        request: CreateInviteRequest,
        credential: ActorCredential | None = Depends(current_credential),
    ) -> dict:
        issued = await ctx.invite_service.create_invite(credential, request.email)
        return {
            "invite_id": issued.invite.invite_id,
            "email": issued.invite.email,
            "expires_at": issued.invite.expires_at.isoformat(),
            "token": issued.token,
        }

    @app.delete("/v1/invites/{invite_id}")
    async def revoke_invite(invite_id: str, credential: ActorCredential | None = Depends(current_credential)) -> dict:
        await ctx.invite_service.revoke_invite(credential, invite_id)
        return {"ok": True}

    @app.post("/v1/auth/accept-invite")
    async def accept_invite(request: AcceptInviteRequest) -> dict:
        tenant, actor = await ctx.invite_service.accept_invite(request.token)
        token = ctx.credentials.issue(
            ActorCredential(tenant_id=tenant.tenant_id, tenant_email=tenant.email, actor_id=actor.actor_id)
        )
        return {
            "tenant_id": tenant.tenant_id,
            "actor_id": actor.actor_id,
            "status": actor.status,
            "session_token": token,
        }

    @app.get("/v1/features/{feature}")
    async def check_feature(feature: str, credential: ActorCredential | None = Depends(current_credential)) -> dict:
        authed = await ctx.authorizer.require_active_member(credential)
        try:
            require_feature(authed.plan, feature)
        except UpgradeRequired as err:
            return {"allowed": False, **err.detail()}
        return {"allowed": True, "feature": feature, "plan": authed.plan}

    @app.post("/v1/billing/plan")
    async def billing_plan_callback(
        request: PlanCallbackRequest,
        x_billing_secret: str = Header(default="", alias="X-Billing-Secret"),
    ) -> dict:
        expected = ctx.settings.billing_webhook_secret
        if not expected:
            raise HTTPException(status_code=500, detail="Billing callback secret is not configured")
        if not hmac.compare_digest(expected, x_billing_secret):
            raise HTTPException(status_code=401, detail="Invalid billing signature")
        if request.cancelled:
            plan = await ctx.billing.cancel_subscription(request.tenant_id)
        else:
            plan = await ctx.billing.apply_plan(request.tenant_id, request.plan)
        return {"tenant_id": request.tenant_id, "plan": plan}

    return app


app = create_app()
