"""
Controller - Top-level wiring and lifecycle
"""

from .service import RelayControllerService

__all__ = ["RelayControllerService"]
