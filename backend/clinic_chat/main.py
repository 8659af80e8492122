import time

from fastapi import FastAPI, Request, status, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from clinic_chat.config import get_settings
from clinic_chat.database import init_db, ping_db, close_db
from clinic_chat.errors import ChatError
from clinic_chat.utils.logger import get_logger
from clinic_chat.rate_limit import limiter

logger = get_logger("main")
settings = get_settings()

# Routers
from clinic_chat.routers import chat as chat_router
from clinic_chat.services.chat_service import ChatService
from clinic_chat.services.identity_service import JWTIdentityProvider
from clinic_chat.services.socket_service import TransportGateway

app = FastAPI(
    title="Clinic Chat API",
    debug=settings.APP_DEBUG,
)

# Live channel: one gateway per process, wrapped around the HTTP app.
# Run with: uvicorn clinic_chat.main:asgi_app
gateway = TransportGateway(settings=settings)
asgi_app = gateway.asgi_app(app)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS for Flutter/web
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat_router.router)


# Error handlers
@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__}: {exc.message} - Path: {request.url.path}")
    else:
        logger.warning(f"{type(exc).__name__}: {exc.message} - Path: {request.url.path}")
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "status_code": exc.status_code},
        headers=headers,
    )

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(f"HTTP {exc.status_code}: {exc.detail} - Path: {request.url.path}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "status_code": exc.status_code}
    )

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error: {exc.errors()} - Path: {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": jsonable_errors(exc), "status_code": 422}
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "status_code": 500}
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]


# Middleware Logging
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    logger.info(
        f"{request.method} {request.url.path} - "
        f"Status: {response.status_code} - "
        f"Time: {process_time:.3f}s"
    )
    return response


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/readyz")
async def readyz():
    if not await ping_db():
        raise HTTPException(status_code=503, detail="Database not ready")
    return {"status": "ok", "database": "up"}


@app.on_event("startup")
async def on_startup():
    logger.info("Starting application...")
    await init_db()
    logger.info("Database initialized")

    identity_provider = JWTIdentityProvider()
    chat_service = ChatService(broadcaster=gateway, identity_provider=identity_provider, settings=settings)
    gateway.bind(chat_service, identity_provider)
    app.state.identity_provider = identity_provider
    app.state.chat_service = chat_service
    app.state.gateway = gateway
    logger.info("Chat service and socket gateway ready")


@app.on_event("shutdown")
async def on_shutdown():
    await gateway.shutdown()
    logger.info("Socket gateway stopped")
    close_db()
    logger.info("Shutting down application...")
