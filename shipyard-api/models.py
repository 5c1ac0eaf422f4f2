from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    PLATFORM_ADMIN = "PLATFORM_ADMIN"
    PROJECT_ADMIN = "PROJECT_ADMIN"
    OBSERVER = "OBSERVER"


class Actor(BaseModel):
    actor_id: str
    role: Role
    email: Optional[str] = None


class ApplyMode(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    UPSERT = "upsert"


class ResourceResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    created_resource_manifest: Optional[Dict[str, Any]] = Field(None, alias="createdResourceManifest")
    updated_resource_manifest: Optional[Dict[str, Any]] = Field(None, alias="updatedResourceManifest")
    error: Optional[str] = None


class ResourcesResponse(BaseModel):
    results: List[ResourceResult]


class ManifestRequest(BaseModel):
    """Connect JSON request body; bytes fields travel base64 encoded."""

    manifest: str = ""


class RpcResourceResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    created_resource_manifest: Optional[str] = Field(None, alias="createdResourceManifest")
    updated_resource_manifest: Optional[str] = Field(None, alias="updatedResourceManifest")
    error: Optional[str] = None


class RpcResourcesResponse(BaseModel):
    results: List[RpcResourceResult]
