"""Main FastAPI application entry point."""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.database import engine, Base
from app.api.routes import router
from app.services.errors import MembershipError
# Import models to register them with SQLAlchemy Base
from app.models.domain import Person, MembershipRecord, RemovalCycle, PresenceEntry
from app.models.audit import AuditEvent

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)

# Create FastAPI app
app = FastAPI(
    title="Club Membership Service",
    description="Membership lifecycle with audited removal and restoration, effective roles and presence.",
    version="0.1.0"
)

# Enable CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # For MVP - restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MembershipError)
async def membership_error_handler(request: Request, exc: MembershipError):
    """Render every refusal with its stable kind so clients can show a specific message."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include API routes
app.include_router(router, prefix="/api", tags=["Membership"])


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "Club Membership Service"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
