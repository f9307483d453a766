"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import SQLModel

from app.api.admin_rules import router as admin_rules_router
from app.api.notifications import router as notifications_router
from app.config import get_settings
from app.db.session import get_engine
from app.services.job_trigger import get_job_trigger

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create database tables on startup."""
    # Import models to register them with SQLModel
    from app import models  # noqa: F401
    SQLModel.metadata.create_all(get_engine())
    yield
    get_job_trigger().close()

app = FastAPI(
    title="Notification Scheduling & Delivery API",
    description="Recurring notification rules, deadline reminders and Web Push delivery",
    version="1.0.0",
    lifespan=lifespan,
)

cors_origins = [
    settings.FRONTEND_URL,
    "http://localhost:3000",
]
# Remove duplicates and empty strings
cors_origins = [origin for origin in set(cors_origins) if origin]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(notifications_router)
app.include_router(admin_rules_router)


@app.get("/health")
def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}
