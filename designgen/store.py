"""Design record persistence.

Every backend implements the same three operations. ``append_preview`` must
be atomic: concurrent workers appending to one design never lose entries and
only the first appended URL becomes ``previewUrl``.
"""
from __future__ import annotations

import json
import logging
import os
import threading
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import WatchError

from designgen.errors import NotFound, StoreError
from designgen.models import DesignRecord, PreviewEntry

log = logging.getLogger(__name__)

DESIGN_STORE = os.getenv("DESIGN_STORE", "file").strip().lower()
DESIGN_STORE_DIR = os.getenv("DESIGN_STORE_DIR", "cache/designs")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
DDB_TABLE = os.getenv("DDB_TABLE", "SOYL-Designs")
DDB_ENDPOINT_URL = os.getenv("DDB_ENDPOINT_URL", "").strip() or None
AWS_REGION = os.getenv("AWS_REGION", "us-east-1")


class DesignStore:
    def create(self, record: DesignRecord) -> str:
        raise NotImplementedError

    def get(self, design_id: str) -> DesignRecord:
        raise NotImplementedError

    def append_preview(self, design_id: str, entry: PreviewEntry) -> DesignRecord:
        raise NotImplementedError


class FileDesignStore(DesignStore):
    """One JSON document per design; appends serialized by a process lock."""

    def __init__(self, root: Optional[str] = None) -> None:
        self.root = Path(root or DESIGN_STORE_DIR)
        self._lock = threading.Lock()

    def _path(self, design_id: str) -> Path:
        safe = "".join(ch for ch in design_id if ch.isalnum() or ch in "-_")
        if not safe:
            raise NotFound(design_id)
        return self.root / f"{safe}.json"

    def _write(self, path: Path, item: Dict[str, Any]) -> None:
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(item, ensure_ascii=False, separators=(",", ":")), encoding="utf-8")
        tmp.replace(path)

    def _read(self, design_id: str) -> DesignRecord:
        path = self._path(design_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NotFound(design_id) from None
        except OSError as exc:
            raise StoreError(f"read failed for {design_id}: {exc}") from exc
        try:
            return DesignRecord.from_item(json.loads(raw))
        except (ValueError, PydanticValidationError) as exc:
            raise StoreError(f"corrupt design record {design_id}: {exc}") from exc

    def create(self, record: DesignRecord) -> str:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            with self._lock:
                path = self._path(record.designId)
                if path.exists():
                    raise StoreError(f"design already exists: {record.designId}")
                self._write(path, record.to_item())
        except OSError as exc:
            raise StoreError(f"create failed for {record.designId}: {exc}") from exc
        return record.designId

    def get(self, design_id: str) -> DesignRecord:
        return self._read(design_id)

    def append_preview(self, design_id: str, entry: PreviewEntry) -> DesignRecord:
        with self._lock:
            record = self._read(design_id)
            if any(p.storageKey == entry.storageKey for p in record.previews):
                return record
            record.previews.append(entry)
            if not record.previewUrl:
                record.previewUrl = entry.url
            try:
                self._write(self._path(design_id), record.to_item())
            except OSError as exc:
                raise StoreError(f"append failed for {design_id}: {exc}") from exc
            return record


class RedisDesignStore(DesignStore):
    """Record at design:{id}; previews in a list, appended under WATCH on the key set.

    A storageKey already in design:{id}:preview_keys is not appended again,
    so redelivered jobs leave the record unchanged.
    """

    def __init__(self, client=None, url: Optional[str] = None) -> None:
        if client is None:
            import redis

            client = redis.from_url(url or REDIS_URL, decode_responses=True)
        self._r = client

    @staticmethod
    def _keys(design_id: str):
        base = f"design:{design_id}"
        return base, f"{base}:previews", f"{base}:preview_url", f"{base}:preview_keys"

    def create(self, record: DesignRecord) -> str:
        key = self._keys(record.designId)[0]
        item = record.to_item()
        item.pop("previews", None)
        item.pop("previewUrl", None)
        try:
            created = self._r.set(key, json.dumps(item, ensure_ascii=False), nx=True)
        except Exception as exc:
            raise StoreError(f"redis create failed for {record.designId}: {exc}") from exc
        if not created:
            raise StoreError(f"design already exists: {record.designId}")
        return record.designId

    def get(self, design_id: str) -> DesignRecord:
        key, list_key, url_key, _ = self._keys(design_id)
        try:
            pipe = self._r.pipeline(transaction=True)
            pipe.get(key)
            pipe.lrange(list_key, 0, -1)
            pipe.get(url_key)
            raw, previews, url = pipe.execute()
        except Exception as exc:
            raise StoreError(f"redis read failed for {design_id}: {exc}") from exc
        if not raw:
            raise NotFound(design_id)
        item = json.loads(raw)
        item["previews"] = [json.loads(p) for p in previews or []]
        item["previewUrl"] = url or None
        return DesignRecord.from_item(item)

    def append_preview(self, design_id: str, entry: PreviewEntry) -> DesignRecord:
        key, list_key, url_key, keys_key = self._keys(design_id)
        try:
            with self._r.pipeline() as pipe:
                while True:
                    try:
                        pipe.watch(keys_key)
                        if not pipe.exists(key):
                            raise NotFound(design_id)
                        if pipe.sismember(keys_key, entry.storageKey):
                            pipe.reset()
                            break
                        pipe.multi()
                        pipe.rpush(list_key, entry.model_dump_json())
                        pipe.sadd(keys_key, entry.storageKey)
                        pipe.setnx(url_key, entry.url)
                        pipe.execute()
                        break
                    except WatchError:
                        continue
        except NotFound:
            raise
        except Exception as exc:
            raise StoreError(f"redis append failed for {design_id}: {exc}") from exc
        return self.get(design_id)


def _to_dynamo(obj: Any) -> Any:
    if isinstance(obj, bool):
        return obj
    if isinstance(obj, float):
        return Decimal(str(obj))
    if isinstance(obj, dict):
        return {k: _to_dynamo(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_to_dynamo(v) for v in obj]
    return obj


def _from_dynamo(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return int(obj) if obj == obj.to_integral_value() else float(obj)
    if isinstance(obj, dict):
        return {k: _from_dynamo(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_from_dynamo(v) for v in obj]
    return obj


def _is_conditional_failure(exc: Exception) -> bool:
    response = getattr(exc, "response", None) or {}
    return (response.get("Error") or {}).get("Code") == "ConditionalCheckFailedException"


class DynamoDesignStore(DesignStore):
    """DynamoDB table keyed by designId; previews appended with a conditional update.

    A string set ``previewKeys`` tracks appended storage keys; an append whose
    key is already in it fails the condition and leaves the item unchanged.
    """

    def __init__(self, table=None, table_name: Optional[str] = None) -> None:
        if table is None:
            import boto3

            resource = boto3.resource("dynamodb", region_name=AWS_REGION, endpoint_url=DDB_ENDPOINT_URL)
            table = resource.Table(table_name or DDB_TABLE)
        self._table = table

    def create(self, record: DesignRecord) -> str:
        item = record.to_item()
        if item.get("previewUrl") is None:
            item.pop("previewUrl", None)
        try:
            self._table.put_item(
                Item=_to_dynamo(item),
                ConditionExpression="attribute_not_exists(designId)",
            )
        except Exception as exc:
            raise StoreError(f"dynamodb create failed for {record.designId}: {exc}") from exc
        return record.designId

    def get(self, design_id: str) -> DesignRecord:
        try:
            res = self._table.get_item(Key={"designId": design_id})
        except Exception as exc:
            raise StoreError(f"dynamodb read failed for {design_id}: {exc}") from exc
        item = res.get("Item")
        if not item:
            raise NotFound(design_id)
        return DesignRecord.from_item(_from_dynamo(item))

    def append_preview(self, design_id: str, entry: PreviewEntry) -> DesignRecord:
        try:
            res = self._table.update_item(
                Key={"designId": design_id},
                UpdateExpression=(
                    "SET previews = list_append(if_not_exists(previews, :empty), :p), "
                    "previewUrl = if_not_exists(previewUrl, :u) "
                    "ADD previewKeys :ks"
                ),
                ConditionExpression="attribute_exists(designId) AND NOT contains(previewKeys, :k)",
                ExpressionAttributeValues={
                    ":p": [_to_dynamo(entry.model_dump())],
                    ":empty": [],
                    ":u": entry.url,
                    ":ks": {entry.storageKey},
                    ":k": entry.storageKey,
                },
                ReturnValues="ALL_NEW",
            )
        except Exception as exc:
            if _is_conditional_failure(exc):
                # missing item raises NotFound here; otherwise the key was already appended
                record = self.get(design_id)
                log.info("store: preview %s already recorded for %s", entry.storageKey, design_id)
                return record
            raise StoreError(f"dynamodb append failed for {design_id}: {exc}") from exc
        attrs = res.get("Attributes")
        if not attrs:
            return self.get(design_id)
        return DesignRecord.from_item(_from_dynamo(attrs))


_store: Optional[DesignStore] = None
_store_lock = threading.Lock()


def get_store() -> DesignStore:
    global _store
    with _store_lock:
        if _store is None:
            if DESIGN_STORE == "dynamodb":
                _store = DynamoDesignStore()
            elif DESIGN_STORE == "redis":
                _store = RedisDesignStore()
            else:
                _store = FileDesignStore()
            log.info("store: using backend=%s", type(_store).__name__)
        return _store
