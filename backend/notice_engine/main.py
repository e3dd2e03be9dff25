"""
Notice Engine - FastAPI Application

Main entry point for the disciplinary notice backend.

Architecture:
- Notice → Integrity (hash, TSA stamp, notary anchor) at creation
- Notice → Delivery (electronic domicile channels) → Identity Gate
- Identity Gate → Engagement tracking → Read confirmation (challenge)
- Notice → Descargo / Witnesses / Evidence → Export package
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import CORS_ORIGINS, LOG_LEVEL
from .database import init_db
from .errors import NoticeEngineError
from .routers import (
    auth_router, descargo_router, disclosure_router, domicile_router, evidence_router,
    incidents_router, notices_router, scheduler_router, verification_router,
    webhooks_router, witnesses_router,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging and initialize database on startup."""
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Notice Engine",
    description="""
    Notice Engine - Disciplinary Notice Disclosure and Evidentiary Integrity

    Delivers employee disciplinary notices through a constituted electronic
    domicile and produces court-ready proof of what was sent, to whom, and
    that it was read.

    ## Pipeline
    1. **Integrity**: SHA-256 of the notice, RFC 3161 stamp, notary anchor
    2. **Delivery**: email / SMS / WhatsApp, paper fallback
    3. **Identity Gate**: identifier, one-time code, optional biometrics
    4. **Read Confirmation**: engagement thresholds plus a content challenge
    5. **Firmness**: undisputed notices become firm after the dispute window
    6. **Evidence**: witnesses, files, descargo and chain-of-custody export

    ## Key Principles
    - The notice content and its hash never change after creation
    - The audit trail is insert-only
    - Any stored digest can be checked publicly at /verify
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(NoticeEngineError)
async def notice_engine_error_handler(request: Request, exc: NoticeEngineError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "message": exc.message, "details": exc.details},
    )


# Include routers
app.include_router(auth_router)
app.include_router(notices_router)
app.include_router(evidence_router)
app.include_router(disclosure_router)
app.include_router(descargo_router)
app.include_router(witnesses_router)
app.include_router(domicile_router)
app.include_router(incidents_router)
app.include_router(verification_router)
app.include_router(webhooks_router)
app.include_router(scheduler_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Notice Engine",
        "version": "1.0.0",
        "description": "Disciplinary notice disclosure and evidentiary integrity",
        "docs": "/docs",
        "public_routes": {
            "disclosure": "/ver/{token}",
            "descargo": "/descargo/{token}",
            "witness": "/testigo/{token}",
            "domicile": "/convenio/{token}",
            "verification": "/verify",
        },
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m notice_engine.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
