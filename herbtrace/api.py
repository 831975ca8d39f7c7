"""
HTTP API for the role portals.

Every portal (collector, processor, laboratory, regulator, consumer,
management) talks to one TraceabilityService through this app. The signed-in
user's role, carried in the JWT, selects the workflow stage the user may
write at.

Features:
- JWT authentication with per-user roles
- Workflow access checks before showing editable forms
- Batch registration, processing and testing submissions, regulatory decisions
- Provenance bundles with traceability scores
- Sync queue status and manual controls
"""

import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import bcrypt
import jwt
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from herbtrace import __version__
from herbtrace.config import Config
from herbtrace.core.workflow import AccessType, BatchNotFound, BatchStatus, Role
from herbtrace.middleware import RequestTrackingMiddleware
from herbtrace.service import SubmissionResult, TraceabilityService, create_service

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

security = HTTPBearer()


# ============================================================================
# Pydantic Models for API
# ============================================================================


class LoginRequest(BaseModel):
    username: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict


class CreateBatchRequest(BaseModel):
    qr_code: str
    collection: Dict[str, Any]
    details: Dict[str, Any] | None = None


class ResourceRequest(BaseModel):
    resource: Dict[str, Any]


class DecisionRequest(BaseModel):
    decision: str
    notes: str = ""


class CompleteRequest(BaseModel):
    notes: str = ""


class OnlineRequest(BaseModel):
    online: bool


# ============================================================================
# Authentication
# ============================================================================


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash."""
    return bcrypt.checkpw(
        plain_password.encode("utf-8"),
        hashed_password.encode("utf-8") if isinstance(hashed_password, str) else hashed_password,
    )


def get_password_hash(password: str) -> str:
    """Hash a password for storage."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def create_access_token(
    data: dict, secret_key: str, expires_delta: timedelta | None = None
) -> str:
    """Create JWT access token."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=Config.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, secret_key, algorithm=ALGORITHM)


def _development_users() -> Dict[str, dict]:
    """One account per role, password ``<role>-dev``."""
    return {
        role.value: {"role": role.value, "password_hash": get_password_hash(f"{role.value}-dev")}
        for role in Role
    }


def _submission_response(result: SubmissionResult) -> dict:
    if result.accepted:
        return result.to_dict()
    if result.errors:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"reason": result.reason, "errors": result.errors},
        )
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=result.reason)


# ============================================================================
# Application Factory
# ============================================================================


def create_app(
    service: TraceabilityService | None = None,
    users: Dict[str, dict] | None = None,
    secret_key: str | None = None,
    start_sync: bool = True,
) -> FastAPI:
    """
    Create the traceability FastAPI application.

    Args:
        service: Traceability service (default: built from Config)
        users: {username: {"role": ..., "password_hash": ...}}
              If None, loads from AUTH_USERS or creates development users
        secret_key: JWT signing key (default: Config.JWT_SECRET_KEY)
        start_sync: Run the periodic sync timer while the app is up

    Returns:
        Configured FastAPI app
    """
    secret_key = secret_key or Config.JWT_SECRET_KEY
    if secret_key is None:
        raise ValueError(
            "JWT_SECRET_KEY environment variable must be set in production. "
            "Generate one with: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
        )

    if service is None:
        service = create_service(Config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_sync:
            service.sync_queue.start()
        yield
        service.sync_queue.stop()

    is_development = Config.ENVIRONMENT == "development"
    app = FastAPI(
        title="Herbtrace API",
        description="Herb supply-chain workflow, provenance and sync",
        version=__version__,
        docs_url="/docs" if is_development else None,
        redoc_url="/redoc" if is_development else None,
        lifespan=lifespan,
    )

    app.add_middleware(RequestTrackingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=Config.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        max_age=600,
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    if users is None:
        users = Config.parse_users()
        if not users:
            if Config.ENVIRONMENT == "production":
                raise ValueError(
                    "No users configured. Set AUTH_USERS with format "
                    "'username:role:hashed_password' or pass users to create_app()"
                )
            logger.warning(
                "Development mode: using default per-role credentials. "
                "Set ENVIRONMENT=production and AUTH_USERS for production use."
            )
            users = _development_users()

    app.state.users = users
    app.state.rate_limit_store = {}
    app.state.service = service

    def current_user(
        request: Request,
        credentials: HTTPAuthorizationCredentials = Depends(security),
    ) -> dict:
        """Decode the bearer token into {username, role}."""
        try:
            payload = jwt.decode(credentials.credentials, secret_key, algorithms=[ALGORITHM])
        except jwt.ExpiredSignatureError:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has expired")
        except jwt.InvalidTokenError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED, detail="Could not validate credentials"
            )

        username = payload.get("sub")
        role = payload.get("role")
        if username is None or role is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED, detail="Could not validate credentials"
            )
        request.state.role = role
        return {"username": username, "role": role}

    def require_batch(qr_code: str):
        batch = service.get_batch_by_qr_code(qr_code)
        if batch is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Batch not found: {qr_code}")
        return batch

    def batch_view(batch) -> dict:
        data = batch.to_dict()
        data["progress"] = service.workflow.progress(batch.status)
        return data

    # ========================================================================
    # Authentication Endpoints
    # ========================================================================

    @app.post("/api/v1/auth/login", response_model=TokenResponse)
    async def login(request: LoginRequest, http_request: Request):
        """Authenticate and return a JWT carrying the user's role.

        Limited to 5 attempts per client per 15 minutes.
        """
        client_ip = http_request.client.host if http_request.client else "unknown"
        now = datetime.now(timezone.utc)
        rate_data = app.state.rate_limit_store.setdefault(
            f"login:{client_ip}", {"count": 0, "reset_time": now}
        )
        if now - rate_data["reset_time"] > timedelta(minutes=15):
            rate_data["count"] = 0
            rate_data["reset_time"] = now
        if rate_data["count"] >= 5:
            logger.warning(f"Rate limit exceeded for login from {client_ip}")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many login attempts. Please try again in 15 minutes.",
            )
        rate_data["count"] += 1

        user = app.state.users.get(request.username)
        if user is None:
            # Same bcrypt cost as a real check so unknown users are not detectable by timing
            verify_password(request.password, get_password_hash(secrets.token_urlsafe(8)))
            logger.warning(f"Failed login attempt for non-existent user: {request.username}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect username or password"
            )

        if not verify_password(request.password, user["password_hash"]):
            logger.warning(f"Failed login attempt for user: {request.username}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect username or password"
            )

        rate_data["count"] = 0
        token = create_access_token({"sub": request.username, "role": user["role"]}, secret_key)
        logger.info(f"Successful login for user: {request.username} ({user['role']})")
        return TokenResponse(
            access_token=token,
            user={"username": request.username, "role": user["role"]},
        )

    @app.get("/api/v1/auth/me")
    async def get_current_user(user: dict = Depends(current_user)):
        return user

    # ========================================================================
    # Workflow Endpoints
    # ========================================================================

    @app.get("/api/v1/workflow/access/{qr_code}")
    async def check_access(
        qr_code: str,
        access_type: str = AccessType.EDIT.value,
        user: dict = Depends(current_user),
    ):
        """What the signed-in role may do with a batch. Never errors on denial."""
        return service.check_access(user["role"], qr_code, access_type).to_dict()

    @app.get("/api/v1/batches")
    async def list_batches(status: str | None = None, user: dict = Depends(current_user)):
        if status:
            try:
                BatchStatus(status)
            except ValueError:
                raise HTTPException(400, f"Invalid status: {status}")
        batches = [
            b for b in service.get_all_batches() if not status or b.status.value == status
        ]
        return {"batches": [batch_view(b) for b in batches], "total": len(batches)}

    @app.post("/api/v1/batches", status_code=status.HTTP_201_CREATED)
    async def create_batch(request: CreateBatchRequest, user: dict = Depends(current_user)):
        if service.get_batch_by_qr_code(request.qr_code) is not None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Batch {request.qr_code} already exists",
            )
        result = service.create_batch(
            user["role"], request.qr_code, request.collection, request.details
        )
        return _submission_response(result)

    @app.get("/api/v1/batches/{qr_code}")
    async def get_batch(qr_code: str, user: dict = Depends(current_user)):
        return batch_view(require_batch(qr_code))

    @app.post("/api/v1/batches/{qr_code}/processing")
    async def submit_processing(
        qr_code: str, request: ResourceRequest, user: dict = Depends(current_user)
    ):
        require_batch(qr_code)
        data = {**request.resource, "kind": "processing"}
        return _submission_response(service.submit_resource(user["role"], qr_code, data))

    @app.post("/api/v1/batches/{qr_code}/testing")
    async def submit_testing(
        qr_code: str, request: ResourceRequest, user: dict = Depends(current_user)
    ):
        require_batch(qr_code)
        data = {**request.resource, "kind": "test"}
        return _submission_response(service.submit_resource(user["role"], qr_code, data))

    @app.post("/api/v1/batches/{qr_code}/decision")
    async def record_decision(
        qr_code: str, request: DecisionRequest, user: dict = Depends(current_user)
    ):
        require_batch(qr_code)
        if request.decision not in (BatchStatus.APPROVED.value, BatchStatus.REJECTED.value):
            raise HTTPException(400, f"Invalid decision: {request.decision}")
        result = service.record_decision(user["role"], qr_code, request.decision, request.notes)
        return _submission_response(result)

    @app.post("/api/v1/batches/{qr_code}/complete")
    async def complete_batch(
        qr_code: str,
        request: CompleteRequest | None = None,
        user: dict = Depends(current_user),
    ):
        require_batch(qr_code)
        notes = request.notes if request else ""
        return _submission_response(service.complete_batch(user["role"], qr_code, notes))

    @app.get("/api/v1/provenance/{qr_code}")
    async def get_provenance(qr_code: str, user: dict = Depends(current_user)):
        try:
            bundle = service.get_provenance(qr_code)
        except BatchNotFound as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        return bundle.to_dict()

    # ========================================================================
    # Sync Endpoints
    # ========================================================================

    @app.get("/api/v1/sync/status")
    async def sync_status(user: dict = Depends(current_user)):
        return service.sync_queue.status().to_dict()

    @app.post("/api/v1/sync/force")
    async def force_sync(user: dict = Depends(current_user)):
        delivered = await service.sync_queue.force_sync_all()
        return {"delivered": delivered, "status": service.sync_queue.status().to_dict()}

    @app.post("/api/v1/sync/clear-completed")
    async def clear_completed(user: dict = Depends(current_user)):
        removed = service.sync_queue.clear_completed()
        return {"removed": removed, "status": service.sync_queue.status().to_dict()}

    @app.post("/api/v1/sync/online")
    async def set_online(request: OnlineRequest, user: dict = Depends(current_user)):
        service.sync_queue.set_online(request.online)
        return service.sync_queue.status().to_dict()

    @app.get("/api/v1/health")
    async def health_check():
        """Health check endpoint (no auth required)."""
        return {
            "status": "healthy",
            "total_batches": len(service.get_all_batches()),
            "sync": service.sync_queue.status().to_dict(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app
