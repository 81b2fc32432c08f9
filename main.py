"""
AI Coloring Studio backend.

Generates coloring pages from text prompts through an external webhook,
keeps each user's gallery, enforces the free-tier limit and upgrades users
to Pro after a verified Razorpay payment.
"""

import hashlib
import logging
import os
import sys
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded

from config import Settings
from entitlement_store import EntitlementStore
from errors import ConfigurationError, NotFoundError, RequestValidationFailed, StudioError
from generation_gateway import GenerationGateway
from generation_service import generate_image
from payment_service import create_order, verify_payment
from quota_service import usage_info
from razorpay_client import RazorpayClient
from schemas import (
    ApiResponse,
    CreateOrderResponse,
    CreateUserRequest,
    GalleryResponse,
    GenerateImageResponse,
    parse_body,
)

settings = Settings.from_env()

# Configure logging based on environment
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"
RATE_LIMIT_MESSAGE = "Too many requests. Please try again in a minute."


# Custom rate limit key function (combines IP + device fingerprint)
def get_rate_limit_key(request: Request) -> str:
    """Generate rate limit key from IP and device fingerprint."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        client_ip = forwarded.split(",")[0].strip()
    elif request.client:
        client_ip = request.client.host
    else:
        client_ip = "unknown"

    device_fp = request.headers.get("X-Device-Fingerprint", "")
    key = f"{client_ip}:{device_fp}" if device_fp else client_ip

    # Hash to create consistent length key
    return hashlib.sha256(key.encode()).hexdigest()[:24]


# Route decorators bind to this instance, so it is shared by every app in the process.
limiter = Limiter(key_func=get_rate_limit_key, enabled=settings.rate_limit_enabled)


# ============= DEPENDENCIES =============

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> EntitlementStore:
    return request.app.state.store


def get_gateway(request: Request) -> GenerationGateway:
    return request.app.state.gateway


def get_razorpay(request: Request) -> RazorpayClient:
    return request.app.state.razorpay


async def read_json(request: Request) -> Any:
    """Decode the request body; malformed JSON is a client error."""
    try:
        return await request.json()
    except ValueError:
        raise RequestValidationFailed("Invalid JSON body")


router = APIRouter()


# ============= PAYMENT ROUTES =============

@router.post("/verify-payment", response_model=ApiResponse)
async def verify_payment_route(
    request: Request,
    store: EntitlementStore = Depends(get_store),
    app_settings: Settings = Depends(get_settings),
):
    """Verify a Razorpay checkout callback and upgrade the user to Pro."""
    body = await read_json(request)
    result = verify_payment(store, app_settings.razorpay_key_secret, body)
    return {"success": True, "message": result.message}


@router.post("/create-order", response_model=CreateOrderResponse)
@limiter.limit(settings.generate_rate_limit)
async def create_order_route(
    request: Request,
    store: EntitlementStore = Depends(get_store),
    razorpay: RazorpayClient = Depends(get_razorpay),
    app_settings: Settings = Depends(get_settings),
):
    """Create the one-time Razorpay order for the Pro upgrade."""
    body = await read_json(request)
    return await create_order(
        store,
        razorpay,
        body,
        amount=app_settings.order_amount_paise,
        currency=app_settings.order_currency,
    )


# ============= GENERATION ROUTES =============

@router.post("/generate-image", response_model=GenerateImageResponse)
@limiter.limit(settings.generate_rate_limit)
async def generate_image_route(
    request: Request,
    store: EntitlementStore = Depends(get_store),
    gateway: GenerationGateway = Depends(get_gateway),
    app_settings: Settings = Depends(get_settings),
):
    """Generate a coloring page from a prompt."""
    body = await read_json(request)
    result = await generate_image(store, gateway, body, free_limit=app_settings.free_generation_limit)
    return result.to_response()


# ============= USER ROUTES =============

@router.post("/users")
async def create_user_route(request: Request, store: EntitlementStore = Depends(get_store)):
    """Create the entitlement record for a freshly signed-up user."""
    body = await read_json(request)
    req = parse_body(CreateUserRequest, body, "Invalid input.")
    entitlement = store.create_entitlement(req.userId, req.email)
    return {"success": True, "message": "Profile ready.", "entitlement": entitlement.to_dict()}


@router.get("/users/{user_id}/usage")
async def get_usage(
    user_id: str,
    store: EntitlementStore = Depends(get_store),
    app_settings: Settings = Depends(get_settings),
):
    """Get user's quota information."""
    entitlement = store.get_entitlement(user_id)
    if entitlement is None:
        raise NotFoundError("User profile not found.")
    return {
        "success": True,
        "isSubscribed": entitlement.is_subscribed,
        **usage_info(entitlement, app_settings.free_generation_limit),
    }


@router.get("/users/{user_id}/images", response_model=GalleryResponse)
async def get_gallery(
    user_id: str,
    limit: int = Query(50, ge=1, le=200),
    store: EntitlementStore = Depends(get_store),
):
    """List a user's generated coloring pages, newest first."""
    if store.get_entitlement(user_id) is None:
        raise NotFoundError("User profile not found.")
    artifacts = store.list_artifacts(user_id, limit=limit)
    return {"success": True, "images": [a.to_dict() for a in artifacts]}


# ============= ERROR HANDLERS =============

async def studio_error_handler(request: Request, exc: StudioError) -> JSONResponse:
    """Render every service error as {success: false, message}."""
    if isinstance(exc, ConfigurationError):
        logger.critical(f"Configuration error on {request.url.path}: {exc.message}")
    elif exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"Rejected {request.url.path} ({exc.status_code}): {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(f"Rate limit exceeded on {request.url.path}: {exc.detail}")
    return JSONResponse(
        status_code=429,
        content={"success": False, "message": RATE_LIMIT_MESSAGE},
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Path and query parameter errors get the same shape as body errors."""
    logger.info(f"Rejected {request.url.path} (400): {exc.errors()}")
    return JSONResponse(status_code=400, content={"success": False, "message": "Invalid input."})


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Something went wrong. Please try again."},
    )


# ============= APP FACTORY =============

def create_app(
    app_settings: Optional[Settings] = None,
    store: Optional[EntitlementStore] = None,
    gateway: Optional[GenerationGateway] = None,
    razorpay: Optional[RazorpayClient] = None,
) -> FastAPI:
    """
    Build the FastAPI app. Collaborators may be injected for tests.

    Rate limiting is process-wide: the module-level ``limiter`` is switched
    on or off by the most recently built app.
    """
    app_settings = app_settings or settings

    logger.info("=" * 60)
    logger.info("Starting AI Coloring Studio")
    logger.info("=" * 60)
    logger.info(f"Environment: {app_settings.environment}")
    logger.info(f"Database: {'PostgreSQL' if app_settings.use_postgres else 'SQLite (' + app_settings.db_path + ')'}")
    logger.info(f"Free generation limit: {app_settings.free_generation_limit}")
    logger.info(f"Generation webhook configured: {bool(app_settings.generation_webhook_url)}")
    logger.info(f"Generation timeout: {app_settings.generation_timeout_seconds}s")
    logger.info(f"Razorpay enabled: {bool(app_settings.razorpay_key_id and app_settings.razorpay_key_secret)}")
    logger.info(f"Rate limiting: {app_settings.rate_limit_enabled} ({app_settings.generate_rate_limit})")

    if not app_settings.razorpay_key_secret:
        logger.warning("RAZORPAY_KEY_SECRET is not set; payment verification will fail with a configuration error.")

    if store is None:
        store = EntitlementStore(database_url=app_settings.database_url, db_path=app_settings.db_path)
    store.init_schema()

    if gateway is None:
        gateway = GenerationGateway(
            app_settings.generation_webhook_url,
            timeout_seconds=app_settings.generation_timeout_seconds,
        )
    if razorpay is None:
        razorpay = RazorpayClient(
            app_settings.razorpay_key_id,
            app_settings.razorpay_key_secret,
            api_base=app_settings.razorpay_api_base,
        )

    app = FastAPI(
        title="AI Coloring Studio",
        version=APP_VERSION,
        docs_url="/docs" if app_settings.is_dev else None,
        redoc_url="/redoc" if app_settings.is_dev else None,
    )
    app.state.settings = app_settings
    app.state.store = store
    app.state.gateway = gateway
    app.state.razorpay = razorpay

    limiter.enabled = app_settings.rate_limit_enabled
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StudioError, studio_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if app_settings.is_dev else app_settings.allowed_origins,
        allow_credentials=False,
        allow_methods=["*"] if app_settings.is_dev else ["GET", "POST"],
        allow_headers=["*"] if app_settings.is_dev else ["Content-Type", "X-Device-Fingerprint"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Add security headers to all responses."""
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        if not app_settings.is_dev:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    # Next.js served these under /api; keep both spellings.
    app.include_router(router)
    app.include_router(router, prefix="/api")

    @app.get("/health")
    async def health_check():
        """Liveness probe."""
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "version": APP_VERSION,
        }

    @app.get("/ready")
    async def readiness_check():
        """Readiness probe: round-trips a row through the database."""
        try:
            ok = app.state.store.ping()
        except StudioError as exc:
            logger.error(f"Readiness check failed: {exc.message}")
            return JSONResponse(
                status_code=503,
                content={"ready": False, "database": "error", "message": exc.message},
            )
        return {"ready": ok, "database": "ok", "timestamp": datetime.now().isoformat()}

    @app.on_event("shutdown")
    async def shutdown_event():
        app.state.store.close()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", 8000)))
