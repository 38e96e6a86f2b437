import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from clickwork.api.v1.messages import router as messages_router
from clickwork.api.v1.providers import router as providers_router
from clickwork.api.v1.requests import router as requests_router
from clickwork.api.v1.reviews import router as reviews_router
from clickwork.core.config import get_settings
from clickwork.core.dependencies import engine
from clickwork.models.marketplace import Base
from clickwork.services.errors import MarketplaceError

settings = get_settings()

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Clickwork API",
    version="1.0.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)


@app.on_event("startup")
async def _startup():
    errors = settings.validate_required_config()
    if errors:
        if settings.is_production:
            raise RuntimeError("Configuration validation failed in production environment: " + "; ".join(errors))
        logger.warning("Configuration problems: %s", "; ".join(errors))
    if settings.auto_create_schema and engine is not None:
        Base.metadata.create_all(bind=engine)
        logger.info("Database schema ensured")


if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

app.include_router(requests_router, prefix="/api/v1", tags=["requests"])
app.include_router(reviews_router, prefix="/api/v1", tags=["reviews"])
app.include_router(providers_router, prefix="/api/v1", tags=["providers"])
app.include_router(messages_router, prefix="/api/v1", tags=["messages"])


@app.exception_handler(MarketplaceError)
async def _marketplace_error_handler(request: Request, exc: MarketplaceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Hide internal details for 5xx unless explicitly enabled.
    if exc.status_code >= 500 and not settings.expose_error_details:
        return JSONResponse(status_code=exc.status_code, content={"detail": "Internal server error"})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if not settings.security_headers_enabled:
        return response

    headers = response.headers
    if "X-Content-Type-Options" not in headers:
        headers["X-Content-Type-Options"] = "nosniff"
    if "X-Frame-Options" not in headers:
        headers["X-Frame-Options"] = "DENY"
    if "Referrer-Policy" not in headers:
        headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if "Content-Security-Policy" not in headers:
        headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'; base-uri 'none'"

    return response


@app.get("/health")
async def health_check():
    return {"status": "ok"}
