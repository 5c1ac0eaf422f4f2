"""
Generic manifest apply engine.

Resources are applied one at a time in dependency order (Projects first).
Each resource is read once and then created or merged and updated through
a store client picked by the ElevationTracker: a Project created earlier in
the same call grants the engine its own privileges inside that namespace,
because the creator's membership is only reconciled after the call returns.
"""

import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Set

from config import SETTINGS
from errors import AlreadyExistsError, ApiError, DeadlineExceededError, ForbiddenError, InternalError, NotFoundError
from manifest import parse_and_order
from models import Actor, ApplyMode
from observability import log_event
from resources import CREATE_ACTOR_ANNOTATION, SECRET_KIND, GenericResource, merge_manifest


@dataclass
class ApplyResult:
    created: Optional[dict] = None
    updated: Optional[dict] = None
    error: Optional[str] = None
    cause: Optional[ApiError] = None

    @property
    def outcome(self) -> str:
        if self.error is not None:
            return "error"
        if self.created is not None:
            return "created"
        return "updated"


def _as_api_error(exc: Exception) -> ApiError:
    if isinstance(exc, ApiError):
        return exc
    return InternalError(str(exc) or exc.__class__.__name__)


def _failed(prefix: str, exc: Exception) -> ApplyResult:
    cause = _as_api_error(exc)
    return ApplyResult(error=f"{prefix}: {cause.message}", cause=cause)


def apply_resource(resource: GenericResource, client, mode: ApplyMode, actor: Actor) -> ApplyResult:
    """Apply one resource with exactly one read and at most one write."""
    if resource.kind == SECRET_KIND and not SETTINGS.secret_management_enabled:
        cause = ForbiddenError("secret management is not enabled")
        return ApplyResult(error=cause.message, cause=cause)

    absent: Optional[NotFoundError] = None
    try:
        existing = client.get(resource.kind, resource.namespace, resource.name)
    except NotFoundError as exc:
        existing, absent = None, exc
    except Exception as exc:
        return _failed("get resource", exc)

    if existing is None:
        if mode == ApplyMode.UPDATE:
            return _failed("update resource", absent or NotFoundError(f"{resource.ref()} not found"))
        candidate = resource.deep_copy()
        if candidate.is_project():
            candidate.set_annotation(CREATE_ACTOR_ANNOTATION, actor.actor_id)
        try:
            return ApplyResult(created=client.create(candidate.body))
        except Exception as exc:
            return _failed("create resource", exc)

    if mode == ApplyMode.CREATE:
        return _failed("create resource", AlreadyExistsError(f'{resource.kind} "{resource.name}" already exists'))

    merged = merge_manifest(existing, resource.body)
    token = (existing.get("metadata") or {}).get("resourceVersion")
    try:
        return ApplyResult(updated=client.update(merged, resource_version=token))
    except Exception as exc:
        return _failed("update resource", exc)


class ElevationTracker:
    """Chooses the store client per resource for one apply call."""

    def __init__(self, capability) -> None:
        self.capability = capability
        self.created_namespaces: Set[str] = set()

    def client_for(self, resource: GenericResource):
        if resource.is_project():
            return self.capability.authorized
        if resource.namespace and resource.namespace in self.created_namespaces:
            log_event(
                "resource_apply_elevated",
                resource=resource.ref(),
                namespace=resource.namespace,
            )
            return self.capability.elevated
        return self.capability.authorized

    def record(self, resource: GenericResource, result: ApplyResult) -> None:
        if resource.is_project() and result.created is not None:
            self.created_namespaces.add(resource.name)


class ResultAggregator:
    """Collects per-resource results; a lone resource's error becomes the call error."""

    def __init__(self, expected: int) -> None:
        self.expected = expected
        self.results: List[ApplyResult] = []

    def add(self, result: ApplyResult) -> None:
        self.results.append(result)

    def finish(self) -> List[ApplyResult]:
        if self.expected == 1 and len(self.results) == 1:
            cause = self.results[0].cause
            if cause is not None:
                raise cause
        return self.results


@dataclass
class ApplyContext:
    deadline: Optional[float] = None
    cancelled: Optional[Callable[[], bool]] = None

    @classmethod
    def with_timeout(cls, seconds: Optional[float] = None, cancelled: Optional[Callable[[], bool]] = None) -> "ApplyContext":
        if seconds is None:
            seconds = SETTINGS.apply_timeout_seconds
        deadline = time.monotonic() + seconds if seconds and seconds > 0 else None
        return cls(deadline=deadline, cancelled=cancelled)

    def check(self) -> None:
        if self.cancelled is not None and self.cancelled():
            raise DeadlineExceededError("request cancelled while applying manifest")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise DeadlineExceededError("deadline exceeded while applying manifest")


def apply_manifest(
    resources: List[GenericResource],
    capability,
    mode: ApplyMode,
    actor: Actor,
    context: Optional[ApplyContext] = None,
) -> List[ApplyResult]:
    context = context or ApplyContext.with_timeout()
    tracker = ElevationTracker(capability)
    aggregator = ResultAggregator(len(resources))
    stopped: Optional[DeadlineExceededError] = None
    for resource in resources:
        if stopped is None:
            try:
                context.check()
            except DeadlineExceededError as exc:
                stopped = exc
                log_event(
                    "manifest_apply_stopped",
                    actor_id=actor.actor_id,
                    mode=mode.value,
                    reason=exc.message,
                    remaining=len(resources) - len(aggregator.results),
                )
        if stopped is not None:
            aggregator.add(ApplyResult(error=stopped.message, cause=stopped))
            continue
        client = tracker.client_for(resource)
        log_event(
            "resource_apply_started",
            actor_id=actor.actor_id,
            mode=mode.value,
            resource=resource.ref(),
        )
        result = apply_resource(resource, client, mode, actor)
        tracker.record(resource, result)
        aggregator.add(result)
        log_event(
            "resource_applied",
            actor_id=actor.actor_id,
            elevated=bool(getattr(client, "elevated", False)),
            error=result.error,
            outcome=result.outcome,
            resource=resource.ref(),
        )
    results = aggregator.results
    log_event(
        "manifest_apply_completed",
        actor_id=actor.actor_id,
        created=sum(1 for result in results if result.outcome == "created"),
        errors=sum(1 for result in results if result.outcome == "error"),
        mode=mode.value,
        total=len(results),
        updated=sum(1 for result in results if result.outcome == "updated"),
    )
    return aggregator.finish()


def apply_manifest_bytes(
    raw: bytes,
    content_type: Optional[str],
    capability,
    mode: ApplyMode,
    actor: Actor,
    context: Optional[ApplyContext] = None,
) -> List[ApplyResult]:
    """Parse, order and apply a raw manifest; parse failures reject the whole call."""
    try:
        resources = parse_and_order(raw, content_type, SETTINGS.max_manifest_bytes)
    except ApiError as exc:
        log_event(
            "manifest_apply_rejected",
            actor_id=actor.actor_id,
            error_code=exc.code,
            mode=mode.value,
            reason=exc.message,
        )
        raise
    return apply_manifest(resources, capability, mode, actor, context)
