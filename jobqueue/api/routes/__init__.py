"""
API routes module.
"""

from jobqueue.api.routes.dead_letters import router as dead_letters_router
from jobqueue.api.routes.health import router as health_router
from jobqueue.api.routes.jobs import router as jobs_router

__all__ = ["jobs_router", "dead_letters_router", "health_router"]
