from dataclasses import dataclass
from typing import Optional

from models import Actor
from policy import Authorizer


class AuthorizedClient:
    """Store client that checks every call against the caller's permissions."""

    elevated = False

    def __init__(self, store, actor: Actor, authorizer: Authorizer) -> None:
        self.store = store
        self.actor = actor
        self.authorizer = authorizer

    def get(self, kind: str, namespace: Optional[str], name: str) -> dict:
        self.authorizer.authorize(self.actor, "get", kind, namespace, name)
        return self.store.get(kind, namespace, name)

    def create(self, obj: dict) -> dict:
        kind, namespace, name = _identity(obj)
        self.authorizer.authorize(self.actor, "create", kind, namespace, name)
        return self.store.create(obj)

    def update(self, obj: dict, resource_version: Optional[str]) -> dict:
        kind, namespace, name = _identity(obj)
        self.authorizer.authorize(self.actor, "update", kind, namespace, name)
        return self.store.update(obj, resource_version)


class InternalClient:
    """Store client running with the service's own privileges."""

    elevated = True

    def __init__(self, store) -> None:
        self.store = store

    def get(self, kind: str, namespace: Optional[str], name: str) -> dict:
        return self.store.get(kind, namespace, name)

    def create(self, obj: dict) -> dict:
        return self.store.create(obj)

    def update(self, obj: dict, resource_version: Optional[str]) -> dict:
        return self.store.update(obj, resource_version)


@dataclass
class ClientCapability:
    authorized: object
    elevated: object


def build_capability(store, actor: Actor, authorizer: Optional[Authorizer] = None) -> ClientCapability:
    authorizer = authorizer or Authorizer(store)
    return ClientCapability(
        authorized=AuthorizedClient(store, actor, authorizer),
        elevated=InternalClient(store),
    )


def _identity(obj: dict):
    metadata = obj.get("metadata") or {}
    return obj.get("kind", ""), metadata.get("namespace"), metadata.get("name", "")
