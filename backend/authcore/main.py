import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from authcore.admin.router import router as admin_router
from authcore.auth.rbac import warn_if_authorization_disabled
from authcore.auth.router import router as auth_router
from authcore.core.config import settings
from authcore.core.errors import AuthError
from authcore.db.init_db import init_db
from authcore.db.session import SessionLocal, engine
from authcore.governance.store import SqlPolicyStore
from authcore.system.bootstrap import BootstrapLoader
from authcore.system.runtime import get_runtime

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL, logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Auth Core",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)


@app.exception_handler(AuthError)
def handle_auth_error(request: Request, exc: AuthError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "%s %s failed: %s (%s)", request.method, request.url.path, type(exc).__name__, exc.detail
        )
    elif exc.detail:
        logger.info("%s %s: %s (%s)", request.method, request.url.path, exc.message, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(SQLAlchemyError)
def handle_db_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.on_event("startup")
def on_startup() -> None:
    db_url = make_url(settings.DATABASE_URL)
    logger.info(
        "Config sanity: env=%s db_host=%s cors_origins=%s access_exp_min=%s idp_configured=%s",
        settings.ENV,
        db_url.host or "local",
        len(settings.CORS_ORIGINS),
        settings.JWT_ACCESS_EXP_MINUTES,
        settings.idp_configured,
    )
    runtime = get_runtime()
    init_db()
    with SessionLocal() as db:
        BootstrapLoader(db, runtime.settings, runtime.hasher).run()
        runtime.policy_engine.reload(SqlPolicyStore(db))
    warn_if_authorization_disabled(runtime.settings)


# --- Routers ---
app.include_router(auth_router, prefix="/auth", tags=["auth"])
app.include_router(admin_router, prefix="/admin", tags=["admin"])


# --- System ---
@app.get("/health", tags=["system"])
def health():
    return {"status": "ok"}


@app.get("/ready", tags=["system"])
def readiness():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        raise HTTPException(status_code=503, detail="Database not ready")
    if get_runtime().policy_engine.snapshot is None:
        raise HTTPException(status_code=503, detail="Policies not loaded")
    return {"status": "ready"}
