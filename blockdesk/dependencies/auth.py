from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request

from blockdesk.security.roles import RoleDirectory, is_valid_address
from blockdesk.tickets.models import ActorContext
from blockdesk.tickets.policy import Role


def get_role_directory(request: Request) -> RoleDirectory:
    directory = getattr(request.app.state, "role_directory", None)
    if directory is None:
        directory = RoleDirectory()
    return directory


async def get_actor_context(
    request: Request,
    directory: Annotated[RoleDirectory, Depends(get_role_directory)],
    x_actor_address: Annotated[str | None, Header()] = None,
) -> ActorContext:
    """Build the actor context from the address the session layer forwards.

    Signatures are verified upstream; this only maps the address to its
    configured role. Unknown addresses get the default role.
    """

    cached = getattr(request.state, "actor", None)
    if isinstance(cached, ActorContext):
        return cached

    if not x_actor_address:
        raise HTTPException(status_code=401, detail="Missing X-Actor-Address header")
    if not is_valid_address(x_actor_address):
        raise HTTPException(status_code=401, detail="Invalid actor address")

    address = x_actor_address.strip().lower()
    role = directory.role_for(address)
    actor = ActorContext(address=address, role=role.value if role is not None else "")
    request.state.actor = actor
    return actor


def role_required(*roles: Role) -> Callable[[ActorContext], ActorContext]:
    """Dependency factory ensuring the current actor holds one of ``roles``."""

    async def dependency(actor: Annotated[ActorContext, Depends(get_actor_context)]) -> ActorContext:
        if Role.parse(actor.role) not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return actor

    return dependency


CurrentActor = Annotated[ActorContext, Depends(get_actor_context)]
