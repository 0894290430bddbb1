"""FastAPI application: chat REST, dual-agent dispatch and billing endpoints."""
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from .agents import AgentGateway, create_from_config
from .auth import AuthError, Identity, TokenVerifier
from .billing import BillingError, BillingService, SignatureError
from .chat_state import derive_title
from .config import agent_names, load_config
from .dispatcher import Dispatcher
from .documents import DocumentStore
from .models import Author, CamelModel, ChatMessage, Plan, UserProfile, new_message, now_ms
from .repositories import ChatRepository, ProfileRepository

logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic request bodies
# -----------------------------
class CreateChatRequest(CamelModel):
    id: Optional[str] = None
    title: Optional[str] = None
    messages: List[ChatMessage] = Field(default_factory=list)


class UpdateChatRequest(CamelModel):
    title: Optional[str] = None
    pinned: Optional[bool] = None


class MessageRequest(CamelModel):
    id: Optional[str] = None
    author: Optional[str] = None
    content: Optional[str] = None
    created_at: Optional[int] = None


class DispatchRequest(CamelModel):
    text: str
    history: List[ChatMessage] = Field(default_factory=list)


class CheckoutRequest(CamelModel):
    price_id: Optional[str] = None
    quantity: int = Field(default=1, ge=1)


# -----------------------------
# Utilities
# -----------------------------
def effective_plan(profile: UserProfile, now: Optional[float] = None) -> Plan:
    """Plan tier to serve: paid plans lapse to free once a payment problem outlives its grace window."""
    if profile.plan == Plan.FREE or profile.plan_status in (None, "active", "trialing"):
        return profile.plan
    now = time.time() if now is None else now
    if profile.grace_until is not None and profile.grace_until > now:
        return profile.plan
    return Plan.FREE


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    gateway: Optional[AgentGateway] = None,
    documents: Optional[DocumentStore] = None,
    billing: Optional[BillingService] = None,
    verifier: Optional[TokenVerifier] = None,
) -> FastAPI:
    cfg = load_config(config_path)

    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])
    title_max = int(cfg.get("chat", {}).get("title_max", 60))
    title_chars = int(cfg.get("chat", {}).get("title_chars", 40))
    names = agent_names(cfg)

    # Services
    documents = documents or DocumentStore(cfg.get("storage", {}).get("data_dir", "data"))
    chats = ChatRepository(documents)
    profiles = ProfileRepository(documents)
    billing = billing or BillingService.from_config(cfg, profiles)
    verifier = verifier or TokenVerifier.from_config(cfg)
    gateway = gateway or create_from_config(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await gateway.aclose()

    app = FastAPI(title="MultaMind", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.documents = documents
    app.state.gateway = gateway
    app.state.billing = billing

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        return _error(400, f"Invalid request: {where} {first.get('msg', '')}".strip())

    # -------------------------
    # Dependencies
    # -------------------------
    def current_identity(authorization: Optional[str] = Header(default=None)) -> Identity:
        try:
            identity = verifier.verify(authorization)
        except AuthError as e:
            raise HTTPException(status_code=401, detail=str(e))
        profiles.get_or_create(identity.uid, identity.email)
        return identity

    def owned_chat(chat_id: str, identity: Identity = Depends(current_identity)) -> str:
        if chats.owner_of(chat_id) != identity.uid:
            raise HTTPException(status_code=403, detail="Forbidden")
        return chat_id

    def valid_title(title: str) -> str:
        trimmed = title.strip()
        if not 1 <= len(trimmed) <= title_max:
            raise HTTPException(status_code=400, detail=f"Title must be between 1 and {title_max} characters.")
        return trimmed

    # -------------------------
    # Service info
    # -------------------------
    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"ok": True, "data_dir": str(documents.root)}

    @app.get("/api/pricing")
    def pricing() -> Dict[str, Optional[str]]:
        return billing.pro_price_ids()

    @app.get("/api/me")
    def me(identity: Identity = Depends(current_identity)) -> Dict[str, Any]:
        profile = profiles.get_or_create(identity.uid, identity.email)
        body = profile.to_json()
        body["effectivePlan"] = effective_plan(profile).value
        return body

    # -------------------------
    # Chats
    # -------------------------
    @app.get("/api/chats")
    def list_chats(identity: Identity = Depends(current_identity)) -> List[Dict[str, Any]]:
        return [c.to_json() for c in chats.list_chats(identity.uid)]

    @app.post("/api/chats")
    def create_chat(req: CreateChatRequest, identity: Identity = Depends(current_identity)) -> Dict[str, Any]:
        if not req.messages:
            raise HTTPException(status_code=400, detail="At least one message is required")
        if req.id:
            owner = chats.owner_of(req.id)
            if owner is not None and owner != identity.uid:
                raise HTTPException(status_code=403, detail="Forbidden")
        title = valid_title(req.title) if req.title is not None else derive_title(req.messages, title_chars)
        item = chats.create_chat(identity.uid, req.id, title, req.messages)
        logger.info("chat %s created for %s", item.id, identity.uid)
        return item.to_json()

    @app.patch("/api/chats/{chat_id}")
    def update_chat(req: UpdateChatRequest, chat_id: str = Depends(owned_chat)) -> Dict[str, Any]:
        title = valid_title(req.title) if req.title is not None else None
        return chats.update_chat(chat_id, title=title, pinned=req.pinned).to_json()

    @app.delete("/api/chats/{chat_id}")
    def delete_chat(chat_id: str = Depends(owned_chat)) -> Dict[str, Any]:
        chats.delete_chat(chat_id)
        return {"deleted": True}

    @app.get("/api/chats/{chat_id}/messages")
    def list_messages(chat_id: str = Depends(owned_chat)) -> List[Dict[str, Any]]:
        return [m.to_json() for m in chats.list_messages(chat_id)]

    @app.post("/api/chats/{chat_id}/messages")
    def add_message(req: MessageRequest, chat_id: str = Depends(owned_chat)) -> Dict[str, Any]:
        if not req.author or not req.content:
            raise HTTPException(status_code=400, detail="Author and content are required")
        try:
            author = Author(req.author)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown author: {req.author}")
        msg = new_message(author, req.content, req.created_at)
        if req.id:
            msg = msg.model_copy(update={"id": req.id})
        return chats.add_message(chat_id, msg).to_json()

    # -------------------------
    # Agents
    # -------------------------
    @app.post("/api/dispatch")
    async def dispatch(req: DispatchRequest, identity: Identity = Depends(current_identity)) -> Dict[str, Any]:
        text = req.text.strip()
        if not text:
            raise HTTPException(status_code=400, detail="Message cannot be empty.")
        plan = effective_plan(profiles.get_or_create(identity.uid, identity.email))
        latest = max((m.created_at for m in req.history), default=0)
        history = list(req.history) + [new_message(Author.USER, text, max(now_ms(), latest + 1))]
        outcome = await Dispatcher(gateway, names).dispatch(text, history, plan)
        return {"messages": [m.to_json() for m in outcome.messages], "error": outcome.error}

    # -------------------------
    # Billing
    # -------------------------
    @app.post("/api/billing/checkout")
    def checkout(req: CheckoutRequest, identity: Identity = Depends(current_identity)) -> Dict[str, Any]:
        if not req.price_id:
            raise HTTPException(status_code=400, detail="Price ID is required")
        try:
            url = billing.create_checkout_session(identity.uid, identity.email, req.price_id, req.quantity)
        except BillingError as e:
            logger.error("checkout for %s failed: %s", identity.uid, e)
            raise HTTPException(status_code=500, detail=f"Internal Server Error: {e}")
        return {"url": url}

    @app.post("/api/billing/portal")
    def portal(identity: Identity = Depends(current_identity)) -> Dict[str, Any]:
        profile = profiles.get_or_create(identity.uid, identity.email)
        if not profile.billing_customer_id:
            logger.warning("%s opened the billing portal without a customer id", identity.uid)
            raise HTTPException(status_code=404, detail="Billing customer ID not found for user.")
        try:
            url = billing.create_portal_session(profile.billing_customer_id)
        except BillingError as e:
            logger.error("portal for %s failed: %s", identity.uid, e)
            raise HTTPException(status_code=500, detail=f"Internal Server Error: {e}")
        return {"url": url}

    @app.post("/api/billing/webhook")
    async def webhook(request: Request) -> JSONResponse:
        payload = await request.body()
        try:
            event = billing.parse_event(payload, request.headers.get("stripe-signature"))
        except SignatureError as e:
            logger.error("webhook signature verification failed: %s", e)
            return _error(400, f"Webhook Error: {e}")
        except BillingError as e:
            logger.error("webhook rejected: %s", e)
            return _error(500, f"Server Error: {e}")

        try:
            billing.handle_event(event)
        except Exception as e:  # acknowledge nothing we failed to apply
            logger.exception("webhook %s failed", event.get("id"))
            return _error(500, f"Server Error: {e}")
        return JSONResponse({"received": True})

    return app
