from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import config
from .database.session import init_db
from .logging_context import configure_logging, get_call_logger
from .routers import appointments, calls, emergency

configure_logging()
logger = get_call_logger(__name__)

app = FastAPI(
    title="Dispatchline",
    description="Dispatch and availability engine for home-services businesses",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(appointments.router)
app.include_router(emergency.router)
app.include_router(calls.router)


@app.get("/health")
async def health():
    """Health check endpoint for deployments."""
    return JSONResponse({"status": "healthy"}, status_code=200)


@app.get("/api/integrations/status")
async def get_integration_status():
    return {
        "database": bool(config.DATABASE_URL),
        "twilio": bool(config.TWILIO_ACCOUNT_SID),
        "calendar": bool(config.CALCOM_API_KEY),
        "maps": bool(config.GOOGLE_MAPS_API_KEY),
        "email": bool(config.MAILCHIMP_API_KEY),
    }


@app.on_event("startup")
async def startup_event():
    """Initialize database on startup - non-blocking."""
    if init_db():
        logger.info("Database initialized successfully")
    else:
        logger.warning("Database initialization failed - app continues")
