from pathlib import Path

import pytest

from errors import ForbiddenError
from models import Actor, Role
from policy import Authorizer
from storage import ObjectStore


def _authorizer(tmp_path: Path) -> Authorizer:
    store = ObjectStore(str(tmp_path / "shipyard-test.db"))
    store.add_project_member("demo", "alice")
    return Authorizer(store)


def test_platform_admin_may_do_anything(tmp_path: Path):
    authorizer = _authorizer(tmp_path)
    admin = Actor(actor_id="root", role=Role.PLATFORM_ADMIN)
    assert authorizer.is_allowed(admin, "update", "Stage", "other", "test")
    assert authorizer.is_allowed(admin, "create", "ClusterConfig", None, "cluster")


def test_observer_may_only_read(tmp_path: Path):
    authorizer = _authorizer(tmp_path)
    observer = Actor(actor_id="olive", role=Role.OBSERVER)
    assert authorizer.is_allowed(observer, "get", "Stage", "demo", "test")
    assert not authorizer.is_allowed(observer, "create", "Project", None, "demo")
    with pytest.raises(ForbiddenError) as excinfo:
        authorizer.authorize(observer, "update", "Stage", "demo", "test")
    assert excinfo.value.message == 'olive cannot update Stage "test" in namespace "demo"'


def test_project_admin_scoped_to_member_projects(tmp_path: Path):
    authorizer = _authorizer(tmp_path)
    alice = Actor(actor_id="alice", role=Role.PROJECT_ADMIN)
    assert authorizer.is_allowed(alice, "create", "Project", None, "new-project")
    assert authorizer.is_allowed(alice, "get", "Project", None, "other")
    assert authorizer.is_allowed(alice, "update", "Project", None, "demo")
    assert not authorizer.is_allowed(alice, "update", "Project", None, "other")
    assert authorizer.is_allowed(alice, "create", "Warehouse", "demo", "wh1")
    assert not authorizer.is_allowed(alice, "get", "Warehouse", "other", "wh1")
    assert not authorizer.is_allowed(alice, "create", "ClusterPromotionTask", None, "shared")


def test_unknown_verb_denied(tmp_path: Path):
    authorizer = _authorizer(tmp_path)
    admin = Actor(actor_id="root", role=Role.PLATFORM_ADMIN)
    with pytest.raises(ForbiddenError) as excinfo:
        authorizer.authorize(admin, "delete", "Project", None, "demo")
    assert excinfo.value.message == 'root cannot delete Project "demo"'
