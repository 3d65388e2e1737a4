# API Routers

from . import audit, bots, health

__all__ = ["audit", "bots", "health"]
