"""API routers."""

from . import admin
from . import health
from . import subscriptions

__all__ = ['admin', 'health', 'subscriptions']
