"""FastAPI application and routes."""
from .container import ServiceContainer
from .main import create_app

__all__ = ["ServiceContainer", "create_app"]
