"""HTTP API for the order reconciliation engine."""
from .main import create_app

__all__ = ["create_app"]
