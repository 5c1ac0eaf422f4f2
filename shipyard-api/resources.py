"""
Schema-less resource envelope shared by the manifest parser, the object
store and the apply engine.

A GenericResource keeps the submitted manifest untouched in ``body`` and
exposes the identifying fields (kind, namespace, name) the engine needs.
Kind-specific models are never built here.
"""

import copy
from dataclasses import dataclass
from typing import Optional

import yaml

from observability import resource_ref


API_GROUP = "shipyard.io"

PROJECT_KIND = "Project"
SECRET_KIND = "Secret"

CLUSTER_SCOPED_KINDS = frozenset({PROJECT_KIND, "ClusterPromotionTask", "ClusterConfig"})

CREATE_ACTOR_ANNOTATION = f"{API_GROUP}/create-actor"

# Fields owned by the store; a submitted manifest can never override them.
SERVER_MANAGED_METADATA = ("uid", "resourceVersion", "creationTimestamp")


def is_cluster_scoped(kind: str) -> bool:
    return kind in CLUSTER_SCOPED_KINDS


@dataclass
class GenericResource:
    body: dict

    @property
    def kind(self) -> str:
        return self.body.get("kind", "")

    @property
    def api_version(self) -> str:
        return self.body.get("apiVersion", "")

    @property
    def metadata(self) -> dict:
        metadata = self.body.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
            self.body["metadata"] = metadata
        return metadata

    @property
    def name(self) -> str:
        return self.metadata.get("name", "")

    @property
    def namespace(self) -> Optional[str]:
        if is_cluster_scoped(self.kind):
            return None
        return self.metadata.get("namespace") or None

    @property
    def resource_version(self) -> Optional[str]:
        return self.metadata.get("resourceVersion")

    def is_project(self) -> bool:
        return self.kind == PROJECT_KIND

    def ref(self) -> str:
        return resource_ref(self.kind, self.namespace, self.name)

    def deep_copy(self) -> "GenericResource":
        return GenericResource(copy.deepcopy(self.body))

    def set_annotation(self, key: str, value: str) -> None:
        annotations = self.metadata.get("annotations")
        if not isinstance(annotations, dict):
            annotations = {}
            self.metadata["annotations"] = annotations
        annotations[key] = value


def merge_manifest(existing: dict, submitted: dict) -> dict:
    """
    Overlay a submitted manifest on top of the stored one.

    Mappings merge key by key, everything else in ``submitted`` replaces what
    is stored. Server managed metadata always comes from ``existing``.
    """
    merged = _merge_value(copy.deepcopy(existing), submitted)
    existing_meta = existing.get("metadata") or {}
    merged_meta = merged.setdefault("metadata", {})
    for key in SERVER_MANAGED_METADATA:
        if key in existing_meta:
            merged_meta[key] = existing_meta[key]
        else:
            merged_meta.pop(key, None)
    return merged


def _merge_value(base, overlay):
    if isinstance(base, dict) and isinstance(overlay, dict):
        for key, value in overlay.items():
            if key in base:
                base[key] = _merge_value(base[key], value)
            else:
                base[key] = copy.deepcopy(value)
        return base
    return copy.deepcopy(overlay)


def to_yaml(manifest: dict) -> str:
    return yaml.safe_dump(manifest, default_flow_style=False, sort_keys=False)
