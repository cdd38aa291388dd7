"""
Authenticated request context.

The authentication middleware stores a RequestContext on
request.state.request_context. Route dependencies read it with
get_request_context(); tenant_id is never taken from client input.
"""

import logging
from dataclasses import dataclass, field
from typing import FrozenSet

from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)

PLATFORM_ADMIN_ROLE = "platform_admin"


@dataclass(frozen=True)
class RequestContext:
    """Immutable identity of the caller for one request."""
    tenant_id: str
    user_id: str
    roles: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self):
        if not self.tenant_id:
            raise ValueError("tenant_id cannot be empty")
        object.__setattr__(self, "roles", frozenset(self.roles))

    @property
    def is_platform_admin(self) -> bool:
        return PLATFORM_ADMIN_ROLE in self.roles


def get_request_context(request: Request) -> RequestContext:
    """
    Extract the request context from request state.

    Raises 403 if the context is missing.
    """
    context = getattr(request.state, "request_context", None)
    if context is None:
        logger.error(
            "Route handler accessed without request context",
            extra={"path": request.url.path},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Tenant context not available",
        )
    return context
