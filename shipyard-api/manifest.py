import json
from typing import Iterable, List, Optional

import yaml

from errors import InvalidArgumentError, PayloadTooLargeError
from resources import GenericResource


class _ManifestLoader(yaml.SafeLoader):
    """SafeLoader that leaves timestamps as strings, the way the store keeps them."""


_ManifestLoader.yaml_implicit_resolvers = {
    first: [resolver for resolver in resolvers if resolver[0] != "tag:yaml.org,2002:timestamp"]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

_JSON_START = ("{", "[")


def _looks_like_json(text: str, content_type: Optional[str]) -> bool:
    if content_type and "json" in content_type.lower():
        return True
    return text.startswith(_JSON_START)


def _declared_json(content_type: Optional[str]) -> bool:
    return bool(content_type) and "json" in content_type.lower()


def _decode_json_stream(text: str) -> List[object]:
    decoder = json.JSONDecoder()
    values = []
    index = 0
    length = len(text)
    while index < length:
        while index < length and text[index].isspace():
            index += 1
        if index >= length:
            break
        value, index = decoder.raw_decode(text, index)
        values.append(value)
    return values


def _decode_yaml_stream(text: str) -> List[object]:
    return list(yaml.load_all(text, Loader=_ManifestLoader))


def _flatten(values: Iterable[object]) -> List[object]:
    documents = []
    for value in values:
        if value is None:
            continue
        if isinstance(value, list):
            documents.extend(value)
        else:
            documents.append(value)
    return documents


def _to_resource(document: object, index: int) -> GenericResource:
    if not isinstance(document, dict):
        raise InvalidArgumentError(f"document {index} is not an object")
    kind = document.get("kind")
    if not isinstance(kind, str) or not kind:
        raise InvalidArgumentError(f"document {index}: kind is required")
    metadata = document.get("metadata")
    if not isinstance(metadata, dict):
        raise InvalidArgumentError(f"document {index}: metadata is required")
    name = metadata.get("name")
    if not isinstance(name, str) or not name:
        raise InvalidArgumentError(f"document {index}: metadata.name is required")
    namespace = metadata.get("namespace")
    if namespace is not None and not isinstance(namespace, str):
        raise InvalidArgumentError(f"document {index}: metadata.namespace must be a string")
    try:
        json.dumps(document, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise InvalidArgumentError(f"document {index}: value cannot be represented as JSON: {exc}") from exc
    return GenericResource(document)


def split_manifest(
    raw: bytes,
    content_type: Optional[str] = None,
    max_bytes: Optional[int] = None,
) -> List[GenericResource]:
    """
    Split a request body into generic resources, preserving input order.

    Accepted shapes:
    - a single JSON object, several concatenated JSON objects, or a JSON array
      of objects;
    - one or more YAML documents separated by ``---``.

    A body that starts like JSON but is not valid JSON is retried as YAML
    (flow-style YAML mappings also start with ``{``) unless the caller declared
    a JSON content type. When both fail the JSON error is reported.
    """
    if max_bytes is not None and len(raw) > max_bytes:
        raise PayloadTooLargeError(f"manifest exceeds {max_bytes} bytes")
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidArgumentError(f"manifest is not valid UTF-8: {exc}") from exc
    text = text.lstrip("\ufeff").strip()
    if not text:
        raise InvalidArgumentError("empty manifest")

    if _looks_like_json(text, content_type):
        try:
            values = _decode_json_stream(text)
        except json.JSONDecodeError as exc:
            if _declared_json(content_type):
                raise InvalidArgumentError(f"invalid JSON: {exc}") from exc
            try:
                values = _decode_yaml_stream(text)
            except yaml.YAMLError:
                raise InvalidArgumentError(f"invalid JSON: {exc}") from exc
    else:
        try:
            values = _decode_yaml_stream(text)
        except yaml.YAMLError as exc:
            raise InvalidArgumentError(f"invalid YAML: {exc}") from exc

    documents = _flatten(values)
    if not documents:
        raise InvalidArgumentError("no resources found in manifest")
    return [_to_resource(document, index) for index, document in enumerate(documents, start=1)]


def order_by_dependency(resources: List[GenericResource]) -> List[GenericResource]:
    """Projects first, everything else after; relative order kept within each tier."""
    projects = [resource for resource in resources if resource.is_project()]
    others = [resource for resource in resources if not resource.is_project()]
    return projects + others


def parse_and_order(
    raw: bytes,
    content_type: Optional[str] = None,
    max_bytes: Optional[int] = None,
) -> List[GenericResource]:
    return order_by_dependency(split_manifest(raw, content_type, max_bytes))
