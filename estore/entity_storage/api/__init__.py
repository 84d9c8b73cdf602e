"""REST surface of a node (FastAPI)."""

from .app import create_app, run_api, status_for
from .routes import router
from .settings import ApiSettings

__all__ = ["ApiSettings", "create_app", "router", "run_api", "status_for"]
