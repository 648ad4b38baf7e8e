from fastapi import FastAPI, APIRouter, Depends, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from pydantic import BaseModel, ConfigDict
from typing import Any, Callable, Dict, Optional
from dataclasses import dataclass, field
import uuid
from datetime import datetime, timezone, timedelta
from passlib.context import CryptContext
from jose import JWTError, jwt

from assessment import VoiceCheckInRequest, assess_voice_check_in
from errors import AmbiguousTarget, LifeSignalError, NotAuthorized, NotFound, Unauthenticated, ValidationFailed
from identifiers import Role, is_e164_phone, looks_like_email, normalize_email, normalize_phone, normalize_role
from invites import Caller, InviteAcceptRequest, InviteCreateRequest, InviteResolver, ProfileSyncRequest
from matching import ContactMatcher, MatchOutcome, contact_uid_of, extract_phones
from notifications import NotificationDispatcher, TelnyxTelephonyService, WebhookPushService
from routing import ContactReplyRequest, MessageRouter, TargetContact, VoiceMessageSendRequest, utc_now
from store import MemoryDocumentStore, MongoDocumentStore

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Auth Configuration
SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "fallback_secret_key_change_in_production")
ALGORITHM = "HS256"
SESSION_COOKIE = "__session"
SESSION_EXPIRE_DAYS = int(os.environ.get("SESSION_EXPIRE_DAYS", "5"))

APP_ORIGIN = os.environ.get("APP_ORIGIN", "http://localhost:3000")
INVITE_EXPIRE_DAYS = int(os.environ.get("INVITE_EXPIRE_DAYS", "7"))

# Password hashing configuration
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

# ==================== HELPERS ====================

def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)

def get_password_hash(password):
    return pwd_context.hash(password)

def parse_admin_bootstrap_emails() -> set:
    raw = os.environ.get("ADMIN_BOOTSTRAP_EMAILS", "")
    return {normalize_email(e) for e in raw.split(",") if e and e.strip()}

def read_session_token(request: Request) -> Optional[str]:
    """Session credential from the __session cookie, falling back to a Bearer header."""
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.split(" ", 1)[1].strip()
    return token or None

# ==================== SESSIONS ====================

@dataclass
class VerifiedSession:
    uid: str
    claims: Dict[str, Any] = field(default_factory=dict)

class SessionService:
    """Signs and verifies session credentials (HS256 JWT)."""

    def __init__(self, secret_key: str = SECRET_KEY, expire_days: int = SESSION_EXPIRE_DAYS):
        self.secret_key = secret_key
        self.expires_in = timedelta(days=expire_days)

    def create(self, uid: str, email: str = "", role: str = Role.UNKNOWN.value) -> str:
        expire = datetime.now(timezone.utc) + self.expires_in
        to_encode = {"sub": uid, "email": email, "role": role, "exp": expire}
        return jwt.encode(to_encode, self.secret_key, algorithm=ALGORITHM)

    def verify(self, token: Optional[str]) -> VerifiedSession:
        if not token:
            raise Unauthenticated()
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[ALGORITHM])
        except JWTError:
            raise Unauthenticated()
        uid = payload.get("sub")
        if not uid or "/" in uid:
            raise Unauthenticated()
        claims = {k: v for k, v in payload.items() if k not in {"sub", "exp"}}
        return VerifiedSession(uid=uid, claims=claims)

# ==================== SERVICES ====================

@dataclass
class Services:
    store: Any
    sessions: SessionService
    matcher: ContactMatcher
    dispatcher: NotificationDispatcher
    router: MessageRouter
    invites: InviteResolver
    telephony: Any

def build_store_from_env():
    mongo_url = os.environ.get("MONGO_URL", "")
    backend = os.environ.get("STORE_BACKEND") or ("mongo" if mongo_url else "memory")
    if backend == "mongo":
        client = AsyncIOMotorClient(mongo_url, tz_aware=True)
        return MongoDocumentStore(client, os.environ.get("DB_NAME", "lifesignal"))
    logger.warning("Using in-memory document store; data will not survive a restart")
    return MemoryDocumentStore()

def build_push_from_env():
    url = os.environ.get("PUSH_WEBHOOK_URL", "").strip()
    return WebhookPushService(url) if url else None

def build_telephony_from_env():
    return TelnyxTelephonyService(
        api_key=os.environ.get("TELNYX_API_KEY", ""),
        connection_id=os.environ.get("TELNYX_CONNECTION_ID", ""),
        from_number=os.environ.get("TELNYX_FROM_NUMBER", ""),
    )

def build_services(store, sessions=None, push_service=None, telephony=None,
                   clock: Callable[[], datetime] = utc_now) -> Services:
    matcher = ContactMatcher(store)
    dispatcher = NotificationDispatcher(store, push_service)
    return Services(
        store=store,
        sessions=sessions or SessionService(),
        matcher=matcher,
        dispatcher=dispatcher,
        router=MessageRouter(store, matcher, dispatcher, clock=clock),
        invites=InviteResolver(store, APP_ORIGIN, timedelta(days=INVITE_EXPIRE_DAYS), clock=clock),
        telephony=telephony,
    )

def get_services(request: Request) -> Services:
    return request.app.state.services

# ==================== MODELS ====================

@dataclass
class CurrentUser:
    uid: str
    role: Role
    profile: Dict[str, Any]
    claims: Dict[str, Any]

    @property
    def email(self) -> str:
        return normalize_email(self.profile.get("email") or self.claims.get("email"))

    @property
    def name(self) -> str:
        return f"{self.profile.get('firstName') or ''} {self.profile.get('lastName') or ''}".strip()

class UserCreate(BaseModel):
    model_config = ConfigDict(extra="ignore")
    email: str
    password: str
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    phone: Optional[str] = None
    role: str = "main_user"

class UserLogin(BaseModel):
    email: str
    password: str

class MarkAsReadRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")
    messageId: Optional[str] = None

class SosCallRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")
    targetContact: Optional[TargetContact] = None
    sendToUid: Optional[str] = None

# ==================== AUTHENTICATION ====================

async def get_current_user(request: Request, services: Services = Depends(get_services)) -> CurrentUser:
    """Verify the session credential and load the caller's profile."""
    session = services.sessions.verify(read_session_token(request))
    snapshot = await services.store.get(f"users/{session.uid}")
    profile = snapshot.data or {}
    role = normalize_role(profile.get("role") or session.claims.get("role"))
    return CurrentUser(uid=session.uid, role=role, profile=profile, claims=session.claims)

def require_role(current_user: CurrentUser, *roles: Role):
    if current_user.role not in roles:
        raise NotAuthorized()

async def get_main_user(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    require_role(current_user, Role.MAIN_USER)
    return current_user

async def get_emergency_contact(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    require_role(current_user, Role.EMERGENCY_CONTACT)
    return current_user

# ==================== AUTH ROUTES ====================

@api_router.post("/auth/register")
async def register(user_data: UserCreate, services: Services = Depends(get_services)):
    """Create (or idempotently refresh) a user profile"""
    email = normalize_email(user_data.email)
    if not looks_like_email(email):
        raise ValidationFailed("Invalid email format")
    if len(user_data.password or "") < 8:
        raise ValidationFailed("Password must be at least 8 characters")

    role = normalize_role(user_data.role)
    if role == Role.UNKNOWN:
        raise ValidationFailed("Unknown role")
    if role == Role.ADMIN and email not in parse_admin_bootstrap_emails():
        raise NotAuthorized("Admin accounts cannot be self-registered.")

    existing = await services.store.find("users", where={"email": email}, limit=1)
    now = datetime.now(timezone.utc)
    profile = {
        "email": email,
        "role": role.value,
        "firstName": (user_data.firstName or "").strip(),
        "lastName": (user_data.lastName or "").strip(),
        "phone": normalize_phone(user_data.phone),
        "updatedAt": now,
    }
    if existing:
        user = existing[0]
        if not verify_password(user_data.password, user.get("hashedPassword") or ""):
            raise ValidationFailed("Email already registered")
        user_id = user.id
        # Repeat signups only fill in what is missing.
        profile = {k: v for k, v in profile.items() if v and not user.get(k)}
        profile["updatedAt"] = now
    else:
        user_id = f"user_{uuid.uuid4().hex[:12]}"
        profile.update({"hashedPassword": get_password_hash(user_data.password), "createdAt": now})

    batch = services.store.batch()
    batch.set(f"users/{user_id}", profile, merge=True)
    await batch.commit()
    return {"ok": True, "uid": user_id, "created": not existing}

@api_router.post("/auth/session")
async def create_session(response: Response, form_data: UserLogin, services: Services = Depends(get_services)):
    """Sign in and set the __session cookie"""
    email = normalize_email(form_data.email)
    found = await services.store.find("users", where={"email": email}, limit=1)
    user = found[0] if found else None
    if not user or not verify_password(form_data.password, user.get("hashedPassword") or ""):
        raise Unauthenticated("Incorrect email or password")

    role = normalize_role(user.get("role"))
    token = services.sessions.create(user.id, email, role.value)
    response.set_cookie(
        key=SESSION_COOKIE,
        value=token,
        httponly=True,
        secure=os.environ.get("ENVIRONMENT", "production") == "production",
        samesite="lax",
        path="/",
        max_age=int(services.sessions.expires_in.total_seconds())
    )
    response.headers["Cache-Control"] = "no-store"
    return {"ok": True, "user": {"uid": user.id, "email": email, "role": role.value}}

@api_router.get("/auth/session")
async def read_session(response: Response, current_user: CurrentUser = Depends(get_current_user)):
    response.headers["Cache-Control"] = "no-store"
    return {"user": {"uid": current_user.uid, "email": current_user.email or None, "role": current_user.role.value}}

@api_router.delete("/auth/session")
async def delete_session(response: Response):
    """Log out"""
    response.delete_cookie(key=SESSION_COOKIE, path="/")
    return {"ok": True}

# ==================== VOICE MESSAGES ====================

@api_router.post("/voice-message/send")
async def send_voice_message(
    payload: VoiceMessageSendRequest,
    current_user: CurrentUser = Depends(get_main_user),
    services: Services = Depends(get_services)
):
    return await services.router.send(current_user.uid, current_user.profile, payload)

@api_router.get("/voice-message/latest-for-contact")
async def latest_voice_message_for_contact(
    contactUid: Optional[str] = None,
    current_user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    require_role(current_user, Role.MAIN_USER, Role.ADMIN)
    latest = await services.router.latest_for_contact(current_user.uid, contactUid or "")
    return {"latest": latest}

@api_router.post("/voice-message/mark-as-read")
async def mark_voice_message_read(
    payload: MarkAsReadRequest,
    current_user: CurrentUser = Depends(get_main_user),
    services: Services = Depends(get_services)
):
    return await services.router.mark_as_read(current_user.uid, payload.messageId or "")

@api_router.post("/voice-message/reply")
async def reply_voice_message(
    payload: ContactReplyRequest,
    current_user: CurrentUser = Depends(get_emergency_contact),
    services: Services = Depends(get_services)
):
    return await services.router.reply_to_main_user(current_user.uid, current_user.profile, payload)

@api_router.post("/voice-check-in")
async def voice_check_in(
    payload: VoiceCheckInRequest,
    current_user: CurrentUser = Depends(get_main_user)
):
    if not isinstance(payload.transcribedSpeech, str):
        raise ValidationFailed("transcribedSpeech must be a string")
    try:
        result = await assess_voice_check_in(payload.transcribedSpeech, payload.previousVoiceMessages)
    except Exception as e:
        logger.error(f"Voice check-in assessment failed for {current_user.uid}: {e}")
        raise LifeSignalError("Failed to assess voice check-in.")
    return result.model_dump()

# ==================== EMERGENCY CONTACT LINKS ====================

@api_router.post("/emergency_contact/invite")
async def create_emergency_contact_invite(
    payload: InviteCreateRequest,
    current_user: CurrentUser = Depends(get_main_user),
    services: Services = Depends(get_services)
):
    issue = await services.invites.create_or_refresh_invite(
        current_user.uid, payload.email, name=payload.name, relation=payload.relation
    )
    return {"ok": True, "inviteId": issue.invite_id, "reused": issue.reused}

@api_router.post("/emergency_contact/invite/resend")
async def resend_emergency_contact_invite(
    payload: InviteCreateRequest,
    current_user: CurrentUser = Depends(get_main_user),
    services: Services = Depends(get_services)
):
    issue = await services.invites.create_or_refresh_invite(
        current_user.uid, payload.email, name=payload.name, relation=payload.relation
    )
    return {"ok": True, "inviteId": issue.invite_id, "reused": issue.reused}

@api_router.post("/emergency_contact/accept")
async def accept_emergency_contact_invite(
    payload: InviteAcceptRequest,
    current_user: CurrentUser = Depends(get_emergency_contact),
    services: Services = Depends(get_services)
):
    caller = Caller(
        uid=current_user.uid,
        email=current_user.email,
        phone=current_user.profile.get("phone") or "",
        name=current_user.name,
    )
    return await services.invites.accept_invite(
        caller, invite_id=payload.inviteId or payload.invite, token=payload.token
    )

@api_router.get("/emergency_contact/legacy-links")
async def legacy_links(
    current_user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    return {"mainUserUids": await services.invites.linked_main_users(current_user.uid)}

@api_router.post("/emergency_contact/sync_profile")
async def sync_emergency_contact_profile(
    payload: ProfileSyncRequest,
    current_user: CurrentUser = Depends(get_emergency_contact),
    services: Services = Depends(get_services)
):
    return await services.invites.sync_contact_profile(current_user.uid, payload)

# ==================== SOS ====================

@api_router.post("/sos/call")
async def sos_call(
    payload: SosCallRequest,
    current_user: CurrentUser = Depends(get_main_user),
    services: Services = Depends(get_services)
):
    """Place an outbound call to the chosen (or first active) emergency contact."""
    target = payload.targetContact
    send_to_uid = (payload.sendToUid or "").strip()
    if target is not None or send_to_uid:
        result = await services.matcher.match(
            current_user.uid,
            normalize_email(target.email) if target else "",
            normalize_phone(target.phone) if target else "",
            contact_uid=send_to_uid or None,
        )
        if result.outcome == MatchOutcome.NOT_FOUND:
            raise NotFound("Target emergency contact not found for this user")
        if result.outcome == MatchOutcome.AMBIGUOUS:
            raise AmbiguousTarget(result.keys)
        candidates = result.docs
    else:
        candidates = await services.matcher.active_links(current_user.uid)

    to_number, contact_uid = None, None
    for doc in candidates:
        phone = next((p for p in extract_phones(doc.data) if is_e164_phone(p)), None)
        if phone:
            to_number, contact_uid = phone, contact_uid_of(doc.data) or None
            break
    if not to_number:
        raise NotFound("No emergency contact phone number available")

    if services.telephony is None:
        raise LifeSignalError("Telephony is not configured")
    call = await services.telephony.call(
        to_number,
        {"reason": "sos", "mainUserUid": current_user.uid, "emergencyContactUid": contact_uid or ""},
    )
    if not call.ok:
        logger.error(f"SOS call for {current_user.uid} failed: {call.error}")
        raise LifeSignalError("Failed to place call")
    return {"ok": True, "to": to_number, "emergencyContactUid": contact_uid, "callControlId": call.call_control_id}

# ==================== LEGACY ROUTES ====================

@api_router.get("/")
async def root():
    return {"message": "LifeSignal API"}

# ==================== ERROR HANDLERS ====================

async def handle_lifesignal_error(request: Request, exc: LifeSignalError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())

async def handle_http_exception(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=getattr(exc, "headers", None))

async def handle_validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{location}: {first.get('msg')}" if location else "Invalid request body"
    return JSONResponse(status_code=400, content={"error": message})

async def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path} failed")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})

# ==================== APP ====================

def create_app(store=None, sessions: Optional[SessionService] = None, push_service=None,
               telephony=None, clock: Callable[[], datetime] = utc_now) -> FastAPI:
    """Build the API with explicit collaborators (environment defaults otherwise)."""
    if store is None:
        store = build_store_from_env()
    if push_service is None:
        push_service = build_push_from_env()
    if telephony is None:
        telephony = build_telephony_from_env()

    app = FastAPI(title="LifeSignal API")
    app.state.services = build_services(store, sessions, push_service, telephony, clock)

    # Include the router in the main app
    app.include_router(api_router)

    app.add_exception_handler(LifeSignalError, handle_lifesignal_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("shutdown")
    async def shutdown_db_client():
        client = getattr(store, "client", None)
        if client is not None:
            client.close()

    return app

app = create_app()
