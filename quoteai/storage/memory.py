from __future__ import annotations

import threading
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence

from quoteai.logging import get_logger
from quoteai.storage.errors import BackendError
from quoteai.storage.models import USER_TABLES, Identity, StoredObject


class MemoryBackend:
    """In-process stand-in for the hosted auth, row and object stores.

    Mirrors the semantics the handlers rely on: filters by owner id set,
    idempotent deletes, path-based object ownership. ``fail_on`` lets tests
    make a single operation report an error, keyed by ``"<operation>"`` or
    ``"<operation>:<table or bucket>"``.
    """

    def __init__(self, base_url: str = "http://memory.local") -> None:
        self.logger = get_logger(__name__)
        self.base_url = base_url.rstrip("/")
        self.identities: Dict[str, Identity] = {}
        self.tokens: Dict[str, str] = {}
        self.tables: Dict[str, List[Dict[str, Any]]] = {table: [] for table in USER_TABLES}
        self.buckets: Dict[str, Dict[str, StoredObject]] = {}
        self.fail_on: Dict[str, str] = {}
        # (operation, target) for every mutating call, in order
        self.writes: List[tuple[str, str]] = []
        self._data_lock = threading.RLock()

    # -- seeding helpers ---------------------------------------------------

    def add_identity(
        self,
        user_id: str,
        *,
        token: Optional[str] = None,
        is_anonymous: bool = False,
        email: Optional[str] = None,
    ) -> Identity:
        identity = Identity(id=user_id, is_anonymous=is_anonymous, email=email)
        with self._data_lock:
            self.identities[user_id] = identity
            if token:
                self.tokens[token] = user_id
        return identity

    def add_row(self, table: str, user_id: str, **values: Any) -> Dict[str, Any]:
        row = {"id": str(uuid.uuid4()), "user_id": user_id, **values}
        with self._data_lock:
            self.tables.setdefault(table, []).append(row)
        return row

    def add_object(self, bucket: str, path: str, content: bytes = b"") -> None:
        with self._data_lock:
            self.buckets.setdefault(bucket, {})[path] = StoredObject(
                name=path.rsplit("/", 1)[-1], content=content
            )

    def rows(self, table: str, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._data_lock:
            rows = list(self.tables.get(table, []))
        if user_id is None:
            return rows
        return [row for row in rows if row.get("user_id") == user_id]

    def object_paths(self, bucket: str) -> List[str]:
        with self._data_lock:
            return sorted(self.buckets.get(bucket, {}))

    def _check(self, operation: str, target: Optional[str] = None) -> None:
        keys = [operation] if target is None else [f"{operation}:{target}", operation]
        for key in keys:
            if key in self.fail_on:
                raise BackendError(operation, self.fail_on[key], status_code=500)

    # -- auth --------------------------------------------------------------

    async def get_user_by_token(self, token: str) -> Optional[Identity]:
        with self._data_lock:
            user_id = self.tokens.get(token)
            if user_id is None:
                return None
            return self.identities.get(user_id)

    async def get_user_by_id(self, user_id: str) -> Optional[Identity]:
        with self._data_lock:
            return self.identities.get(user_id)

    async def delete_user(self, user_id: str) -> None:
        self._check("delete_user")
        with self._data_lock:
            self.writes.append(("delete_user", user_id))
            if self.identities.pop(user_id, None) is None:
                self.logger.info("memory_delete_user_absent", user_id=user_id)
            for token in [t for t, uid in self.tokens.items() if uid == user_id]:
                del self.tokens[token]

    # -- rows --------------------------------------------------------------

    async def delete_rows(self, table: str, owner_ids: Sequence[str]) -> None:
        self._check("delete_rows", table)
        owners = set(owner_ids)
        with self._data_lock:
            self.writes.append(("delete_rows", table))
            rows = self.tables.setdefault(table, [])
            self.tables[table] = [row for row in rows if row.get("user_id") not in owners]

    async def update_rows(
        self, table: str, owner_ids: Sequence[str], values: Dict[str, Any]
    ) -> None:
        self._check("update_rows", table)
        owners = set(owner_ids)
        with self._data_lock:
            self.writes.append(("update_rows", table))
            for row in self.tables.setdefault(table, []):
                if row.get("user_id") in owners:
                    row.update(values)

    async def count_rows(self, table: str, owner_id: str) -> int:
        self._check("count_rows", table)
        with self._data_lock:
            return sum(
                1 for row in self.tables.get(table, []) if row.get("user_id") == owner_id
            )

    # -- objects -----------------------------------------------------------

    async def list_objects(self, bucket: str, prefix: str, limit: int) -> List[str]:
        self._check("list_objects", bucket)
        folder = prefix.rstrip("/") + "/"
        with self._data_lock:
            names = sorted(
                path[len(folder):]
                for path in self.buckets.get(bucket, {})
                if path.startswith(folder) and "/" not in path[len(folder):]
            )
        return names[:limit]

    async def remove_objects(self, bucket: str, paths: Iterable[str]) -> None:
        self._check("remove_objects", bucket)
        with self._data_lock:
            self.writes.append(("remove_objects", bucket))
            objects = self.buckets.get(bucket, {})
            for path in paths:
                objects.pop(path, None)

    async def move_object(self, bucket: str, source: str, destination: str) -> None:
        self._check("move_object", source)
        with self._data_lock:
            objects = self.buckets.setdefault(bucket, {})
            if source not in objects:
                raise BackendError("move_object", "object not found", status_code=404)
            if destination in objects:
                raise BackendError("move_object", "destination exists", status_code=409)
            self.writes.append(("move_object", source))
            stored = objects.pop(source)
            stored.name = destination.rsplit("/", 1)[-1]
            objects[destination] = stored

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{bucket}/{path}"

    async def close(self) -> None:
        return None
