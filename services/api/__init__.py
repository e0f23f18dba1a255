"""
API Layer - HTTP surface

Responsibilities:
- Manual relay reads, writes, block writes and pulses
- Schedule create / list / update / delete
- Health reporting for the bus, reconciler and store
"""

from .server import ApiServer

__all__ = ["ApiServer"]
