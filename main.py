from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging
import structlog
import time
from contextlib import asynccontextmanager

from auth import (
    InMemoryIdentityProvider,
    SupabaseIdentityProvider,
    configure_identity,
    get_identity_resolver,
)
from config import Settings, get_settings
from errors import ApiError, InternalError, InvalidPayloadError, UnauthenticatedError
from idempotency import configure_ledger
from models import ErrorResponse
from repositories import (
    close_repositories,
    configure_repositories,
    get_backend_client,
    get_idempotency_store,
)
from routers import router
from validators import details_from_errors


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.log_level.upper(), format="%(message)s")

    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


settings = get_settings()

# Configure structured logging
configure_logging(settings)

logger = structlog.get_logger()

# Rate limiting
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
    enabled=settings.rate_limit_enabled
)


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Moni API", storage_backend=settings.storage_backend)
    if settings.storage_backend == "supabase":
        configure_repositories(settings)
        configure_identity(SupabaseIdentityProvider(get_backend_client()))
    else:
        configure_identity(InMemoryIdentityProvider(settings.dev_tokens))
    await configure_ledger(get_idempotency_store())
    yield
    # Shutdown
    await close_repositories()
    logger.info("Shutting down Moni API")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Gateway for personal-finance mutations with idempotent transaction creation",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)


# Identity resolution for every non-exempt route
@app.middleware("http")
async def resolve_identity(request: Request, call_next):
    resolver = get_identity_resolver()
    if resolver.is_exempt(request.method, request.url.path):
        return await call_next(request)

    try:
        identity = await resolver.resolve(request.headers.get("authorization"))
    except UnauthenticatedError as e:
        return JSONResponse(status_code=e.status_code, content=e.to_body())

    request.state.user_id = identity.user_id
    request.state.access_token = identity.token
    return await call_next(request)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        path=request.url.path,
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        process_time=round(process_time, 4)
    )

    return response


# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=False,
    allow_methods=settings.allowed_methods,
    allow_headers=settings.allowed_headers,
)

app.include_router(router)


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    logger.warning(
        "Request failed",
        method=request.method,
        path=request.url.path,
        status_code=exc.status_code,
        error=exc.error_code
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    error = InvalidPayloadError(details=details_from_errors(exc.errors()))
    return JSONResponse(status_code=error.status_code, content=error.to_body())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    codes = {404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=codes.get(exc.status_code, f"HTTP_{exc.status_code}")
        ).model_dump(exclude_none=True)
    )


# Global exception handler
@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        path=request.url.path,
        method=request.method,
        exc_info=True
    )
    error = InternalError()
    return JSONResponse(status_code=error.status_code, content=error.to_body())


# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    return {"message": settings.app_name, "docs": "/docs"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
