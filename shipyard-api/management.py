import logging
from typing import List, Tuple

from observability import log_event
from resources import CREATE_ACTOR_ANNOTATION, PROJECT_KIND

logger = logging.getLogger("shipyard.management")


def project_owner(project: dict) -> str:
    annotations = (project.get("metadata") or {}).get("annotations") or {}
    owner = annotations.get(CREATE_ACTOR_ANNOTATION)
    return owner.strip() if isinstance(owner, str) else ""


def reconcile_project_owners(storage) -> List[Tuple[str, str]]:
    """
    Grant the creator of every Project membership in it.

    Runs outside of any API call; a Project created through the apply engine
    is only writable by its creator once this has caught up. Returns the
    (project, subject) pairs granted in this pass.
    """
    granted = []
    for project in storage.list_resources(PROJECT_KIND):
        name = project["metadata"]["name"]
        owner = project_owner(project)
        if not owner:
            logger.debug("project %s has no creator annotation", name)
            continue
        if storage.add_project_member(name, owner):
            log_event("project_owner_granted", project=name, subject=owner)
            granted.append((name, owner))
    return granted
