"""Tunnel persistence."""

from .models import Base, TunnelRow
from .store import TunnelStore

__all__ = [
    "Base",
    "TunnelRow",
    "TunnelStore",
]
