"""API package for gatekeeper."""

from gatekeeper.api.app import app, create_app
from gatekeeper.api.dependencies import admission_dependency
from gatekeeper.api.routes import router

__all__ = ["admission_dependency", "app", "create_app", "router"]
