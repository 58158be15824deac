"""HTTP request-handling layer."""

from .http_server import Identity, create_http_app, extract_identity, run_http_server

__all__ = ["Identity", "create_http_app", "extract_identity", "run_http_server"]
