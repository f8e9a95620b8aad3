"""Centralized metrics module for Prometheus instrumentation.

This package consolidates all Prometheus metrics definitions:
- connection_metrics: WhatsApp session lifecycle and outbound message metrics

HTTP request metrics are collected by prometheus-fastapi-instrumentator in
``app.main``.

Usage:
    from app.metrics.connection_metrics import whatsapp_connection_status
"""

from app.metrics import connection_metrics

__all__ = ["connection_metrics"]
