"""Route modules."""

from .accounts import router as accounts_router
from .admin import router as admin_router
from .internal import router as internal_router
from .jobs import router as jobs_router
from .transcribers import router as transcribers_router

__all__ = ["accounts_router", "admin_router", "internal_router", "jobs_router", "transcribers_router"]
