"""
Middleware package for the WhatsApp Gateway API.
"""

from app.middleware.request_logging import RequestLoggingMiddleware

__all__ = ["RequestLoggingMiddleware"]
