"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from abeai.config import get_settings
from abeai.database import init_db, close_db, async_session_maker
from abeai.routes import chat
from abeai.core.config_loader import reload_configs, get_rules, RulesConfigError

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if get_settings().debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info(f"Starting {settings.app_name}...")
    await init_db()

    # Pre-load rule tables into cache
    reload_configs()
    try:
        rules = get_rules()
    except RulesConfigError as e:
        logger.critical(f"Rule tables failed to load: {e}")
        raise  # Prevent startup with invalid rules
    logger.info(
        f"Loaded {len(rules.pillars)} pillars: {rules.pillar_names}, "
        f"{len(rules.crisis.self_harm_phrases) + len(rules.crisis.disordered_eating_phrases)} crisis phrases"
    )

    yield

    # Shutdown
    logger.info("Shutting down...")
    await close_db()
    logger.info("Database connections closed")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="AbeAI health coach chat endpoint",
    version="0.1.0",
    lifespan=lifespan,
)


class PreflightCORSMiddleware(CORSMiddleware):
    """CORSMiddleware that answers accepted preflights with an empty 204."""

    def preflight_response(self, request_headers) -> Response:
        response = super().preflight_response(request_headers)
        if response.status_code != 200:
            return response
        headers = {
            key: value
            for key, value in response.headers.items()
            if key not in ("content-length", "content-type")
        }
        return Response(status_code=204, headers=headers)


# Configure CORS
app.add_middleware(
    PreflightCORSMiddleware,
    allow_origins=settings.cors_origins,  # Restricted to configured origins
    allow_credentials=True,
    allow_methods=["POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=600,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies are 400s with the chat response shape."""
    errors = exc.errors()
    if any(error.get("type") == "json_invalid" for error in errors):
        detail = "Invalid JSON body"
    else:
        fields = [
            ".".join(str(part) for part in error.get("loc", ()) if part != "body")
            for error in errors
        ]
        detail = f"Invalid or missing fields: {', '.join(f for f in fields if f) or 'body'}"
    logger.info(f"Rejected request to {request.url.path}: {detail}")
    return JSONResponse(
        status_code=400,
        content={"response": "Sorry, I couldn't read that message.", "error": detail},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Keep error bodies in the same shape as chat responses."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"response": str(exc.detail), "error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


# Include routers
app.include_router(chat.router)


@app.get("/health")
async def health_check():
    """Health check endpoint with dependency verification."""
    health_status = {
        "status": "healthy",
        "checks": {}
    }

    try:
        async with async_session_maker() as db:
            await db.execute(text("SELECT 1"))
        health_status["checks"]["kv_store"] = {"status": "healthy"}
    except Exception as e:
        health_status["checks"]["kv_store"] = {"status": "unhealthy", "error": str(e)}
        health_status["status"] = "degraded"

    try:
        rules = get_rules()
        health_status["checks"]["rules"] = {"status": "healthy", "pillars": rules.pillar_names}
    except RulesConfigError as e:
        health_status["checks"]["rules"] = {"status": "unhealthy", "error": str(e)}
        health_status["status"] = "degraded"

    return health_status


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "abeai.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
