"""
Web module - health document and the loopback admin app.
"""

from .health import build_health_document

__all__ = ["build_health_document"]
