"""Notice Engine - API Routers"""
from .auth import router as auth_router
from .notices import router as notices_router
from .evidence import router as evidence_router
from .disclosure import router as disclosure_router
from .descargo import router as descargo_router
from .witnesses import router as witnesses_router
from .domicile import router as domicile_router
from .incidents import router as incidents_router
from .verification import router as verification_router
from .webhooks import router as webhooks_router
from .scheduler import router as scheduler_router

__all__ = [
    "auth_router",
    "notices_router",
    "evidence_router",
    "disclosure_router",
    "descargo_router",
    "witnesses_router",
    "domicile_router",
    "incidents_router",
    "verification_router",
    "webhooks_router",
    "scheduler_router",
]
