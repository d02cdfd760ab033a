from contextlib import asynccontextmanager
from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.sessions import SessionMiddleware
from sqlmodel import Session, text

from outreach.core.config import settings
from outreach.api.api_router import api_router
from outreach.core.auth import auth_client
from outreach.core.db import engine, init_db
from outreach.core.logging import configure_logging
from outreach.core.tracing import setup_tracing
from outreach.scheduler import shutdown_scheduler, start_scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging()
    setup_tracing()
    init_db()
    if settings.ENABLE_SCHEDULER:
        start_scheduler()

    yield

    # Shutdown
    shutdown_scheduler()


app = FastAPI(
    title=settings.APP_NAME,
    lifespan=lifespan,
)

# Set all CORS enabled origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALL_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Set the session middleware
app.add_middleware(SessionMiddleware, secret_key=settings.SESSION_SECRET)

# Save auth state
app.state.auth_client = auth_client

app.include_router(api_router, prefix=settings.API_PREFIX)


@app.get("/healthz")
async def health_check():
    """Health check endpoint that verifies database connectivity."""
    health_status = {
        "status": "healthy",
        "services": {
            "database": "unknown",
        },
        "scheduler": "enabled" if settings.ENABLE_SCHEDULER else "disabled",
    }

    try:
        with Session(engine) as session:
            session.exec(text("SELECT 1"))
            health_status["services"]["database"] = "healthy"
    except Exception as e:
        health_status["services"]["database"] = f"unhealthy: {str(e)}"
        health_status["status"] = "degraded"

    return health_status
