"""Identity and request-context collaborators for the recorder.

An identity provider is any zero-argument callable returning the current
Actor or None. Providers must not raise; the recorder guards them anyway.

Usage:
    from src.audit.identity import bind_request, context_identity

    with bind_request(actor, RequestContext(ip_address="10.0.0.4")):
        await recorder.log_data_access(...)
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Callable, Iterator
from contextvars import ContextVar

import jwt

from src.schemas.audit import Actor, RequestContext

logger = logging.getLogger(__name__)

IdentityProvider = Callable[[], Actor | None]
ContextProvider = Callable[[], RequestContext | None]

_current_actor: ContextVar[Actor | None] = ContextVar("audit_actor", default=None)
_current_request: ContextVar[RequestContext | None] = ContextVar("audit_request", default=None)


def context_identity() -> Actor | None:
    """Actor bound to the current request/task, if any."""
    return _current_actor.get()


def context_request() -> RequestContext | None:
    """Request metadata bound to the current request/task, if any."""
    return _current_request.get()


@contextlib.contextmanager
def bind_request(actor: Actor | None, context: RequestContext | None = None) -> Iterator[None]:
    """Bind an actor and request context for the duration of the block."""
    actor_token = _current_actor.set(actor)
    request_token = _current_request.set(context)
    try:
        yield
    finally:
        _current_actor.reset(actor_token)
        _current_request.reset(request_token)


class JWTIdentityProvider:
    """Resolve the actor from a bearer token's claims.

    Expects `sub` (or `id`), `email`, `role` and `organizationId` claims.
    Any missing token, bad signature or expired token resolves to None.
    """

    def __init__(self, token_getter: Callable[[], str | None], secret: str, algorithm: str = "HS256") -> None:
        self._token_getter = token_getter
        self._secret = secret
        self._algorithm = algorithm

    def __call__(self) -> Actor | None:
        try:
            token = self._token_getter()
        except Exception:
            logger.warning("Token lookup failed while resolving audit actor")
            return None
        if not token:
            return None
        return actor_from_token(token, self._secret, self._algorithm)


def actor_from_token(token: str, secret: str, algorithm: str = "HS256") -> Actor | None:
    """Decode a bearer token into an Actor, or None if it is not valid."""
    if not secret:
        return None
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
    except jwt.PyJWTError as exc:
        logger.info("Rejected bearer token for audit actor: %s", exc)
        return None

    actor_id = payload.get("sub") or payload.get("id")
    if not actor_id:
        return None
    return Actor(
        id=str(actor_id),
        email=payload.get("email"),
        role=payload.get("role"),
        organization_id=payload.get("organizationId") or payload.get("organization_id"),
    )
