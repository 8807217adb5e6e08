from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from helpdesk.tickets.models import Actor, Role

TOKEN_ACTOR_MAP: dict[str, Actor] = {
    "admin-token": Actor(id="admin", role=Role.ADMIN),
    "agent-token": Actor(id="agent", role=Role.AGENT),
    "agent2-token": Actor(id="agent-2", role=Role.AGENT),
    "requester-token": Actor(id="requester", role=Role.REQUESTER),
    "requester2-token": Actor(id="requester-2", role=Role.REQUESTER),
}

ACTOR_DIRECTORY: dict[str, Actor] = {actor.id: actor for actor in TOKEN_ACTOR_MAP.values()}

bearer_scheme = HTTPBearer(auto_error=False)


def auth_error(status_code: int, kind: str, message: str) -> HTTPException:
    """Build an HTTP error with the same ``{kind, message}`` detail as ticket errors."""

    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return HTTPException(status_code=status_code, detail={"kind": kind, "message": message}, headers=headers)


def resolve_actor_from_token(token: str | None) -> Actor:
    """Return the actor associated with the provided bearer token.

    Static tokens stand in for the identity provider; the lifecycle core only
    ever sees the resulting ``Actor``.
    """

    if not token:
        raise auth_error(401, "unauthenticated", "Authentication required")
    actor = TOKEN_ACTOR_MAP.get(token)
    if actor is None:
        raise auth_error(401, "unauthenticated", "Invalid authentication credentials")
    return actor


def lookup_actor(actor_id: str) -> Actor | None:
    return ACTOR_DIRECTORY.get(actor_id)


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)]
) -> Actor:
    return resolve_actor_from_token(credentials.credentials if credentials else None)


def role_required(*roles: Role) -> Callable[[Actor], Actor]:
    """Dependency factory ensuring the current actor holds one of ``roles``."""

    async def dependency(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
        if actor.role not in roles:
            raise auth_error(403, "forbidden", "Insufficient permissions")
        return actor

    return dependency


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
