"""Right-of-reply (descargo) sub-machine."""
from .descargo_service import DescargoService, SWORN_STATEMENT

__all__ = ["DescargoService", "SWORN_STATEMENT"]
