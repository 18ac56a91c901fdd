"""Middleware components for the car-wash API."""

from __future__ import annotations

from api.middleware.edge_routing import EdgeRoutingMiddleware
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.rbac import (
    ROLE_PERMISSIONS,
    Permission,
    TenantRole,
    require_permission,
)

__all__ = [
    "EdgeRoutingMiddleware",
    "Permission",
    "ROLE_PERMISSIONS",
    "RequestLoggingMiddleware",
    "TenantRole",
    "require_permission",
]
