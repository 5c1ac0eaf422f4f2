import base64
import binascii
import logging
import os
import uuid
from typing import Callable, List, Optional

import yaml
from anyio import from_thread
from fastapi import FastAPI, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import HTTPException as FastAPIHTTPException, RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from apply import ApplyContext, ApplyResult, apply_manifest_bytes
from auth import get_actor
from client import build_capability
from config import SETTINGS
from errors import ApiError, InvalidArgumentError, PayloadTooLargeError
from models import (
    Actor,
    ApplyMode,
    ManifestRequest,
    ResourceResult,
    ResourcesResponse,
    RpcResourceResult,
    RpcResourcesResponse,
)
from observability import configure_logging, request_id_ctx
from policy import Authorizer
from resources import to_yaml
from storage import build_storage


RPC_SERVICE_PATH = "/rpc/shipyard.service.v1alpha1.ShipyardService"

# Connect protocol codes for plain HTTP errors raised by the framework.
_HTTP_STATUS_TO_RPC_CODE = {
    400: "invalid_argument",
    401: "unauthenticated",
    403: "permission_denied",
    404: "unimplemented",
    405: "unimplemented",
    409: "aborted",
    413: "resource_exhausted",
    415: "unimplemented",
    429: "unavailable",
    504: "deadline_exceeded",
}

configure_logging()
app = FastAPI(title="Shipyard API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=SETTINGS.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
storage = build_storage()
authorizer = Authorizer(storage)
logger = logging.getLogger("shipyard.api")

logger.info(
    "config.apply loaded max_manifest_bytes=%s apply_timeout_seconds=%s secret_management=%s",
    SETTINGS.max_manifest_bytes,
    SETTINGS.apply_timeout_seconds,
    "enabled" if SETTINGS.secret_management_enabled else "disabled",
)

if os.getenv("SHIPYARD_LAMBDA", "") == "1":
    try:
        from mangum import Mangum

        handler = Mangum(app)
    except Exception:
        handler = None


def _is_rpc(request: Request) -> bool:
    return request.url.path.startswith("/rpc/")


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    request_id = request_id_ctx.get() or str(uuid.uuid4())
    payload = {
        "code": code,
        "error_code": code,
        "message": message,
        "request_id": request_id,
    }
    return JSONResponse(status_code=status_code, content=payload)


def rpc_error_response(status_code: int, rpc_code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"code": rpc_code, "message": message})


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    if _is_rpc(request):
        return rpc_error_response(exc.status_code, exc.rpc_code, exc.message)
    return error_response(exc.status_code, exc.code, exc.message)


@app.exception_handler(FastAPIHTTPException)
async def http_exception_handler(request: Request, exc: FastAPIHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    if _is_rpc(request):
        rpc_code = _HTTP_STATUS_TO_RPC_CODE.get(exc.status_code, "unknown")
        return rpc_error_response(exc.status_code, rpc_code, message)
    return error_response(exc.status_code, "HTTP_ERROR", message)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    if _is_rpc(request):
        return rpc_error_response(400, "invalid_argument", "Invalid request")
    return error_response(400, "INVALID_REQUEST", "Invalid request")


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    token = request_id_ctx.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_ctx.reset(token)
    response.headers["X-Request-Id"] = request_id
    return response


def _enforce_content_length(request: Request, limit: int) -> None:
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise PayloadTooLargeError(f"request body exceeds {limit} bytes")


def _disconnected(request: Request) -> Callable[[], bool]:
    # called from the worker thread running _apply
    def cancelled() -> bool:
        return from_thread.run(request.is_disconnected)

    return cancelled


def _apply(
    actor: Actor,
    raw: bytes,
    content_type: Optional[str],
    mode: ApplyMode,
    cancelled: Optional[Callable[[], bool]] = None,
) -> List[ApplyResult]:
    capability = build_capability(storage, actor, authorizer)
    context = ApplyContext.with_timeout(cancelled=cancelled)
    return apply_manifest_bytes(raw, content_type, capability, mode, actor, context)


def _rest_payload(results: List[ApplyResult]) -> dict:
    response = ResourcesResponse(
        results=[
            ResourceResult(
                created_resource_manifest=result.created,
                updated_resource_manifest=result.updated,
                error=result.error,
            )
            for result in results
        ]
    )
    return response.model_dump(by_alias=True, exclude_none=True)


async def _apply_rest(request: Request, authorization: Optional[str], mode: ApplyMode, status_code: int) -> JSONResponse:
    actor = await run_in_threadpool(get_actor, authorization)
    _enforce_content_length(request, SETTINGS.max_manifest_bytes)
    raw = await request.body()
    content_type = request.headers.get("content-type")
    results = await run_in_threadpool(_apply, actor, raw, content_type, mode, _disconnected(request))
    return JSONResponse(status_code=status_code, content=_rest_payload(results))


@app.get("/v1/health")
def health():
    return {"status": "UP"}


@app.post("/v1/resources")
async def create_resources(request: Request, authorization: Optional[str] = Header(None)):
    return await _apply_rest(request, authorization, ApplyMode.CREATE, 201)


@app.put("/v1/resources")
async def update_resources(
    request: Request,
    upsert: bool = Query(False),
    authorization: Optional[str] = Header(None),
):
    mode = ApplyMode.UPSERT if upsert else ApplyMode.UPDATE
    return await _apply_rest(request, authorization, mode, 200)


@app.put("/v2/resources")
async def create_or_update_resources(request: Request, authorization: Optional[str] = Header(None)):
    return await _apply_rest(request, authorization, ApplyMode.UPSERT, 200)


def decode_bytes_field(value: str) -> bytes:
    """Decode a Connect JSON bytes field (standard or URL-safe base64, padding optional)."""
    text = value.strip().replace("-", "+").replace("_", "/")
    text += "=" * (-len(text) % 4)
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidArgumentError("manifest must be base64 encoded bytes") from exc


def encode_manifest(manifest: dict) -> str:
    return base64.b64encode(to_yaml(manifest).encode("utf-8")).decode("ascii")


def _rpc_result(result: ApplyResult) -> RpcResourceResult:
    if result.error is not None:
        return RpcResourceResult(error=result.error)
    if result.created is not None:
        try:
            return RpcResourceResult(created_resource_manifest=encode_manifest(result.created))
        except yaml.YAMLError as exc:
            return RpcResourceResult(error=f"marshal created manifest: {exc}")
    try:
        return RpcResourceResult(updated_resource_manifest=encode_manifest(result.updated))
    except yaml.YAMLError as exc:
        return RpcResourceResult(error=f"marshal updated manifest: {exc}")


async def _apply_rpc(request: Request, authorization: Optional[str], mode: ApplyMode) -> JSONResponse:
    actor = await run_in_threadpool(get_actor, authorization)
    # base64 grows the envelope by a third over the manifest it carries
    _enforce_content_length(request, SETTINGS.max_manifest_bytes * 4 // 3 + 1024)
    body = await request.body()
    try:
        payload = ManifestRequest.model_validate_json(body or b"{}")
    except ValidationError as exc:
        raise InvalidArgumentError("request body must be a JSON object with a manifest field") from exc
    raw = decode_bytes_field(payload.manifest)
    results = await run_in_threadpool(_apply, actor, raw, None, mode, _disconnected(request))
    response = RpcResourcesResponse(results=[_rpc_result(result) for result in results])
    return JSONResponse(status_code=200, content=response.model_dump(by_alias=True, exclude_none=True))


@app.post(f"{RPC_SERVICE_PATH}/CreateOrUpdateResource")
async def rpc_create_or_update_resource(request: Request, authorization: Optional[str] = Header(None)):
    return await _apply_rpc(request, authorization, ApplyMode.UPSERT)


@app.post(f"{RPC_SERVICE_PATH}/UpdateResource")
async def rpc_update_resource(request: Request, authorization: Optional[str] = Header(None)):
    return await _apply_rpc(request, authorization, ApplyMode.UPDATE)


@app.post(f"{RPC_SERVICE_PATH}/CreateResource")
async def rpc_create_resource(request: Request, authorization: Optional[str] = Header(None)):
    return await _apply_rpc(request, authorization, ApplyMode.CREATE)
