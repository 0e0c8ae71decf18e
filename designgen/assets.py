from __future__ import annotations

import hashlib
import logging
import os
import threading
from pathlib import Path
from typing import Optional

from designgen.errors import StoreError

log = logging.getLogger(__name__)

ASSET_STORE = os.getenv("ASSET_STORE", "local").strip().lower()
ASSET_DIR = os.getenv("ASSET_DIR", "cache/assets")
ASSET_BASE_URL = os.getenv("ASSET_BASE_URL", "/assets").rstrip("/")
S3_BUCKET = os.getenv("S3_BUCKET", "soyl-assets")
S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL", "").strip() or None
AWS_REGION = os.getenv("AWS_REGION", "us-east-1")
try:
    PREVIEW_URL_TTL_SECONDS = int(os.getenv("PREVIEW_URL_TTL_SECONDS", "300"))
except Exception:
    PREVIEW_URL_TTL_SECONDS = 300


def preview_key(design_id: str, index: int) -> str:
    """Deterministic object key so a redelivered job overwrites its own preview."""
    suffix = hashlib.sha1(f"{design_id}:{index}".encode("utf-8")).hexdigest()[:12]
    return f"designs/{design_id}/sketch-{index}-{suffix}.png"


class LocalAssetStore:
    def __init__(self, root: Optional[str] = None, base_url: Optional[str] = None) -> None:
        self.root = Path(root or ASSET_DIR)
        self.base_url = (base_url if base_url is not None else ASSET_BASE_URL).rstrip("/")

    def put(self, key: str, data: bytes, content_type: str = "image/png") -> None:
        path = self.root / key
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_bytes(data)
            tmp.replace(path)
        except OSError as exc:
            raise StoreError(f"asset write failed for {key}: {exc}") from exc

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{key}"


class S3AssetStore:
    def __init__(self, client=None, bucket: Optional[str] = None, ttl_seconds: int = PREVIEW_URL_TTL_SECONDS) -> None:
        if client is None:
            import boto3

            client = boto3.client("s3", region_name=AWS_REGION, endpoint_url=S3_ENDPOINT_URL)
        self._s3 = client
        self.bucket = bucket or S3_BUCKET
        self.ttl_seconds = ttl_seconds

    def put(self, key: str, data: bytes, content_type: str = "image/png") -> None:
        try:
            self._s3.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except Exception as exc:
            raise StoreError(f"s3 upload failed for {key}: {exc}") from exc

    def url_for(self, key: str) -> str:
        try:
            return self._s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=self.ttl_seconds,
            )
        except Exception as exc:
            log.warning("assets: presign failed for key=%s: %s", key, exc)
            return f"s3://{self.bucket}/{key}"


_assets = None
_assets_lock = threading.Lock()


def get_asset_store():
    global _assets
    with _assets_lock:
        if _assets is None:
            _assets = S3AssetStore() if ASSET_STORE == "s3" else LocalAssetStore()
        return _assets
