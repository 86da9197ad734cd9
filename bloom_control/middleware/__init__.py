"""
HTTP middleware.
"""

from .monitoring import add_monitoring_middleware

__all__ = ["add_monitoring_middleware"]
