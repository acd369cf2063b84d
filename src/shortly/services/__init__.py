"""
Shortly services: entity owners and replica keepers.

Usage:
    from shortly.services import SERVICE_BUILDERS

    runtime = SERVICE_BUILDERS["links"](db, transport)
    await runtime.setup()
"""

from typing import Callable, Dict

from .analytics import build_analytics_service
from .auth import build_auth_service
from .links import LinkStore, UserReplicaHandler, build_links_service
from .redirect import Redirector, build_lookups_service
from .runtime import ServiceRuntime
from .users import UserHasLinksError, UserStore, build_users_service

SERVICE_BUILDERS: Dict[str, Callable[..., ServiceRuntime]] = {
    "users": build_users_service,
    "links": build_links_service,
    "analytics": build_analytics_service,
    "auth": build_auth_service,
    "lookups": build_lookups_service,
}

__all__ = [
    "SERVICE_BUILDERS",
    "LinkStore",
    "Redirector",
    "ServiceRuntime",
    "UserHasLinksError",
    "UserReplicaHandler",
    "UserStore",
    "build_analytics_service",
    "build_auth_service",
    "build_links_service",
    "build_lookups_service",
    "build_users_service",
]
