from typing import Optional

from errors import ForbiddenError
from models import Actor, Role
from resources import PROJECT_KIND, is_cluster_scoped


READ_VERBS = {"get"}
WRITE_VERBS = {"create", "update"}


class Authorizer:
    """
    RBAC decisions for the authorized store client.

    - PLATFORM_ADMIN may do anything.
    - PROJECT_ADMIN may read and create Projects, and may read or write
      anything inside (or the Project object of) a project it is a member of.
    - OBSERVER may only read.
    """

    def __init__(self, storage) -> None:
        self.storage = storage

    def is_allowed(self, actor: Actor, verb: str, kind: str, namespace: Optional[str], name: str) -> bool:
        if verb not in READ_VERBS and verb not in WRITE_VERBS:
            return False
        if actor.role == Role.PLATFORM_ADMIN:
            return True
        if actor.role == Role.OBSERVER:
            return verb in READ_VERBS
        if actor.role != Role.PROJECT_ADMIN:
            return False
        if kind == PROJECT_KIND:
            if verb == "get" or verb == "create":
                return True
            return self.storage.is_project_member(name, actor.actor_id)
        if is_cluster_scoped(kind) or not namespace:
            return False
        return self.storage.is_project_member(namespace, actor.actor_id)

    def authorize(self, actor: Actor, verb: str, kind: str, namespace: Optional[str], name: str) -> None:
        if self.is_allowed(actor, verb, kind, namespace, name):
            return
        if namespace and not is_cluster_scoped(kind):
            raise ForbiddenError(
                f'{actor.actor_id} cannot {verb} {kind} "{name}" in namespace "{namespace}"'
            )
        raise ForbiddenError(f'{actor.actor_id} cannot {verb} {kind} "{name}"')
