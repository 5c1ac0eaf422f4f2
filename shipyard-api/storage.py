import json
import os
import sqlite3
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

from config import SETTINGS
from errors import AlreadyExistsError, ConflictError, InvalidArgumentError, NotFoundError
from resources import PROJECT_KIND, is_cluster_scoped

try:
    import boto3
    from boto3.dynamodb.conditions import Attr, Key
    from botocore.exceptions import ClientError
except Exception:  # pragma: no cover - optional dependency for local mode
    boto3 = None
    Key = None
    Attr = None
    ClientError = None


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def resource_key(kind: str, namespace: Optional[str], name: str) -> Tuple[str, str, str]:
    if not kind or not name:
        raise InvalidArgumentError("kind and name are required")
    if is_cluster_scoped(kind):
        return kind, "", name
    if not namespace:
        raise InvalidArgumentError(f"namespace is required for {kind} {name}")
    return kind, namespace, name


def _not_found(kind: str, namespace: str, name: str) -> NotFoundError:
    if namespace:
        return NotFoundError(f'{kind} "{namespace}/{name}" not found')
    return NotFoundError(f'{kind} "{name}" not found')


def _already_exists(kind: str, namespace: str, name: str) -> AlreadyExistsError:
    if namespace:
        return AlreadyExistsError(f'{kind} "{namespace}/{name}" already exists')
    return AlreadyExistsError(f'{kind} "{name}" already exists')


def _modified(kind: str, name: str) -> ConflictError:
    return ConflictError(
        f'Operation cannot be fulfilled on {kind} "{name}": the object has been modified; '
        "please apply your changes to the latest version and try again"
    )


def _parse_version(value: Optional[str]) -> Optional[int]:
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return None


def _stamp_new(obj: dict, namespace: str, version: int) -> dict:
    stored = dict(obj)
    metadata = dict(stored.get("metadata") or {})
    if namespace:
        metadata["namespace"] = namespace
    else:
        metadata.pop("namespace", None)
    metadata["uid"] = str(uuid.uuid4())
    metadata["creationTimestamp"] = utc_now()
    metadata["resourceVersion"] = str(version)
    stored["metadata"] = metadata
    return stored


def _stamp_update(obj: dict, namespace: str, version: int) -> dict:
    stored = dict(obj)
    metadata = dict(stored.get("metadata") or {})
    if namespace:
        metadata["namespace"] = namespace
    else:
        metadata.pop("namespace", None)
    metadata["resourceVersion"] = str(version)
    stored["metadata"] = metadata
    return stored


class ObjectStore:
    """SQLite backed control-plane object store with optimistic concurrency."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS resources (
                kind TEXT NOT NULL,
                namespace TEXT NOT NULL,
                name TEXT NOT NULL,
                resource_version INTEGER NOT NULL,
                body TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (kind, namespace, name)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS project_members (
                project TEXT NOT NULL,
                subject TEXT NOT NULL,
                granted_at TEXT NOT NULL,
                PRIMARY KEY (project, subject)
            )
            """
        )
        conn.commit()
        conn.close()

    def _row_to_resource(self, row: sqlite3.Row) -> dict:
        return json.loads(row["body"])

    def _fetch(self, cur: sqlite3.Cursor, kind: str, namespace: str, name: str) -> Optional[sqlite3.Row]:
        cur.execute(
            "SELECT * FROM resources WHERE kind = ? AND namespace = ? AND name = ?",
            (kind, namespace, name),
        )
        return cur.fetchone()

    def _require_project(self, cur: sqlite3.Cursor, namespace: str) -> None:
        if not namespace:
            return
        if self._fetch(cur, PROJECT_KIND, "", namespace) is None:
            raise NotFoundError(f'namespace "{namespace}" not found')

    def get(self, kind: str, namespace: Optional[str], name: str) -> dict:
        kind, namespace, name = resource_key(kind, namespace, name)
        conn = self._connect()
        try:
            row = self._fetch(conn.cursor(), kind, namespace, name)
        finally:
            conn.close()
        if row is None:
            raise _not_found(kind, namespace, name)
        return self._row_to_resource(row)

    def create(self, obj: dict) -> dict:
        metadata = obj.get("metadata") or {}
        kind, namespace, name = resource_key(obj.get("kind", ""), metadata.get("namespace"), metadata.get("name", ""))
        stored = _stamp_new(obj, namespace, 1)
        now = utc_now()
        conn = self._connect()
        try:
            cur = conn.cursor()
            self._require_project(cur, namespace)
            cur.execute(
                """
                INSERT INTO resources (kind, namespace, name, resource_version, body, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (kind, namespace, name, 1, json.dumps(stored), now, now),
            )
            conn.commit()
        except sqlite3.IntegrityError as exc:
            raise _already_exists(kind, namespace, name) from exc
        finally:
            conn.close()
        return stored

    def update(self, obj: dict, resource_version: Optional[str]) -> dict:
        metadata = obj.get("metadata") or {}
        kind, namespace, name = resource_key(obj.get("kind", ""), metadata.get("namespace"), metadata.get("name", ""))
        expected = _parse_version(resource_version)
        conn = self._connect()
        try:
            cur = conn.cursor()
            row = self._fetch(cur, kind, namespace, name)
            if row is None:
                raise _not_found(kind, namespace, name)
            if expected is None:
                raise _modified(kind, name)
            stored = _stamp_update(obj, namespace, expected + 1)
            cur.execute(
                """
                UPDATE resources SET resource_version = ?, body = ?, updated_at = ?
                WHERE kind = ? AND namespace = ? AND name = ? AND resource_version = ?
                """,
                (expected + 1, json.dumps(stored), utc_now(), kind, namespace, name, expected),
            )
            if cur.rowcount == 0:
                raise _modified(kind, name)
            conn.commit()
        finally:
            conn.close()
        return stored

    def list_resources(self, kind: str, namespace: Optional[str] = None) -> List[dict]:
        conn = self._connect()
        cur = conn.cursor()
        if namespace is None:
            cur.execute("SELECT * FROM resources WHERE kind = ? ORDER BY namespace, name", (kind,))
        else:
            cur.execute(
                "SELECT * FROM resources WHERE kind = ? AND namespace = ? ORDER BY name",
                (kind, namespace),
            )
        rows = cur.fetchall()
        conn.close()
        return [self._row_to_resource(row) for row in rows]

    def add_project_member(self, project: str, subject: str) -> bool:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "INSERT OR IGNORE INTO project_members (project, subject, granted_at) VALUES (?, ?, ?)",
            (project, subject, utc_now()),
        )
        added = cur.rowcount > 0
        conn.commit()
        conn.close()
        return added

    def is_project_member(self, project: str, subject: str) -> bool:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "SELECT 1 FROM project_members WHERE project = ? AND subject = ?",
            (project, subject),
        )
        row = cur.fetchone()
        conn.close()
        return row is not None


class DynamoObjectStore:
    def __init__(self, table_name: str) -> None:
        if not boto3:
            raise RuntimeError("boto3 is required for DynamoDB storage")
        self.table = boto3.resource("dynamodb").Table(table_name)

    def _pk(self, kind: str, namespace: str) -> str:
        return f"RESOURCE#{kind}#{namespace}"

    def _is_condition_failure(self, exc: Exception) -> bool:
        return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"

    def _require_project(self, namespace: str) -> None:
        if not namespace:
            return
        response = self.table.get_item(Key={"pk": self._pk(PROJECT_KIND, ""), "sk": namespace})
        if not response.get("Item"):
            raise NotFoundError(f'namespace "{namespace}" not found')

    def get(self, kind: str, namespace: Optional[str], name: str) -> dict:
        kind, namespace, name = resource_key(kind, namespace, name)
        response = self.table.get_item(Key={"pk": self._pk(kind, namespace), "sk": name})
        item = response.get("Item")
        if not item:
            raise _not_found(kind, namespace, name)
        return json.loads(item["body"])

    def create(self, obj: dict) -> dict:
        metadata = obj.get("metadata") or {}
        kind, namespace, name = resource_key(obj.get("kind", ""), metadata.get("namespace"), metadata.get("name", ""))
        self._require_project(namespace)
        stored = _stamp_new(obj, namespace, 1)
        try:
            self.table.put_item(
                Item={
                    "pk": self._pk(kind, namespace),
                    "sk": name,
                    "kind": kind,
                    "namespace": namespace,
                    "resource_version": Decimal(1),
                    "body": json.dumps(stored),
                    "updatedAt": utc_now(),
                },
                ConditionExpression=Attr("pk").not_exists(),
            )
        except ClientError as exc:
            if self._is_condition_failure(exc):
                raise _already_exists(kind, namespace, name) from exc
            raise
        return stored

    def update(self, obj: dict, resource_version: Optional[str]) -> dict:
        metadata = obj.get("metadata") or {}
        kind, namespace, name = resource_key(obj.get("kind", ""), metadata.get("namespace"), metadata.get("name", ""))
        expected = _parse_version(resource_version)
        if expected is None:
            self.get(kind, namespace, name)
            raise _modified(kind, name)
        stored = _stamp_update(obj, namespace, expected + 1)
        try:
            self.table.put_item(
                Item={
                    "pk": self._pk(kind, namespace),
                    "sk": name,
                    "kind": kind,
                    "namespace": namespace,
                    "resource_version": Decimal(expected + 1),
                    "body": json.dumps(stored),
                    "updatedAt": utc_now(),
                },
                ConditionExpression=Attr("pk").exists() & Attr("resource_version").eq(Decimal(expected)),
            )
        except ClientError as exc:
            if self._is_condition_failure(exc):
                self.get(kind, namespace, name)
                raise _modified(kind, name) from exc
            raise
        return stored

    def list_resources(self, kind: str, namespace: Optional[str] = None) -> List[dict]:
        if namespace is not None:
            response = self.table.query(KeyConditionExpression=Key("pk").eq(self._pk(kind, namespace)))
        else:
            # TODO: Full table scan (1MB page limit); paginate with LastEvaluatedKey once projects grow.
            response = self.table.scan(FilterExpression=Attr("kind").eq(kind))
        items = response.get("Items", [])
        resources = [json.loads(item["body"]) for item in items]
        resources.sort(key=lambda r: ((r.get("metadata") or {}).get("namespace", ""), r["metadata"]["name"]))
        return resources

    def add_project_member(self, project: str, subject: str) -> bool:
        try:
            self.table.put_item(
                Item={"pk": f"PROJECT_MEMBER#{project}", "sk": subject, "grantedAt": utc_now()},
                ConditionExpression=Attr("pk").not_exists(),
            )
        except ClientError as exc:
            if self._is_condition_failure(exc):
                return False
            raise
        return True

    def is_project_member(self, project: str, subject: str) -> bool:
        response = self.table.get_item(Key={"pk": f"PROJECT_MEMBER#{project}", "sk": subject})
        return bool(response.get("Item"))


def build_storage(settings=None):
    settings = settings or SETTINGS
    if settings.ddb_table:
        return DynamoObjectStore(settings.ddb_table)
    return ObjectStore(settings.db_path)
