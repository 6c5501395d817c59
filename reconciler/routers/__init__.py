from .ledger import router as ledger_router
from .webhook import router as webhook_router

__all__ = ["ledger_router", "webhook_router"]
