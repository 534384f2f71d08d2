"""Artifact storage for rendered landings.

Two backends share one small interface (put / get / url / ping):

* ``S3ArtifactStore``: boto3 against an S3-compatible bucket; URLs are presigned GETs.
* ``LocalArtifactStore``: plain files under a directory, for dev and tests.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from landing.config import Settings
from landing.errors import ArtifactStoreError

log = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json; charset=utf-8"
HTML_CONTENT_TYPE = "text/html; charset=utf-8"


def artifact_keys(session_id: str) -> Dict[str, str]:
    prefix = f"sessions/{session_id}"
    return {"json_key": f"{prefix}/landing.json", "html_key": f"{prefix}/landing.html"}


class S3ArtifactStore:
    backend = "s3"

    def __init__(self, bucket: str, client: Any, url_expires: int = 3600) -> None:
        self.bucket = bucket
        self.client = client
        self.url_expires = url_expires

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3ArtifactStore":
        kwargs: Dict[str, Any] = {"region_name": settings.s3_region}
        if settings.s3_access_key_id and settings.s3_secret_access_key:
            kwargs["aws_access_key_id"] = settings.s3_access_key_id
            kwargs["aws_secret_access_key"] = settings.s3_secret_access_key
        if settings.s3_endpoint_url:
            kwargs["endpoint_url"] = settings.s3_endpoint_url
        client = boto3.client("s3", **kwargs)
        return cls(settings.s3_bucket, client, url_expires=settings.s3_url_expires)

    def put(self, key: str, body: bytes, content_type: str) -> None:
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=body, ContentType=content_type)
        except (ClientError, BotoCoreError) as exc:
            log.warning("artifacts.put: s3 upload failed key=%s: %s", key, exc)
            raise ArtifactStoreError(f"artifact upload failed for {key}: {exc}") from exc

    def get(self, key: str) -> Optional[bytes]:
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=key)
            return obj["Body"].read()
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in ("NoSuchKey", "404", "NotFound"):
                return None
            raise ArtifactStoreError(f"artifact read failed for {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise ArtifactStoreError(f"artifact read failed for {key}: {exc}") from exc

    def url(self, key: str) -> str:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=self.url_expires,
            )
        except (ClientError, BotoCoreError) as exc:
            raise ArtifactStoreError(f"could not presign {key}: {exc}") from exc

    def ping(self) -> bool:
        try:
            self.client.head_bucket(Bucket=self.bucket)
            return True
        except (ClientError, BotoCoreError) as exc:
            log.warning("artifacts.ping: head_bucket failed: %s", exc)
            return False


class LocalArtifactStore:
    backend = "local"

    def __init__(self, root: str, base_url: str = "/artifacts") -> None:
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ArtifactStoreError(f"invalid artifact key {key!r}")
        return path

    def put(self, key: str, body: bytes, content_type: str) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(path.suffix + ".tmp")
            tmp.write_bytes(body)
            tmp.replace(path)
        except OSError as exc:
            raise ArtifactStoreError(f"artifact write failed for {key}: {exc}") from exc

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_bytes()
        except OSError as exc:
            raise ArtifactStoreError(f"artifact read failed for {key}: {exc}") from exc

    def url(self, key: str) -> str:
        return f"{self.base_url}/{key}"

    def ping(self) -> bool:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            return True
        except OSError:
            return False


def store_landing(store, session_id: str, content: Dict[str, Any], html: str) -> Dict[str, str]:
    """Upload the JSON and HTML renditions and return keys plus fetch URLs."""
    keys = artifact_keys(session_id)
    body = json.dumps(content, ensure_ascii=False, indent=2).encode("utf-8")
    store.put(keys["json_key"], body, JSON_CONTENT_TYPE)
    store.put(keys["html_key"], html.encode("utf-8"), HTML_CONTENT_TYPE)
    log.info("artifacts.store: session=%s backend=%s", session_id, store.backend)
    return {
        **keys,
        "json_url": store.url(keys["json_key"]),
        "html_url": store.url(keys["html_key"]),
    }


def build_artifact_store(settings: Settings):
    if settings.s3_configured:
        return S3ArtifactStore.from_settings(settings)
    return LocalArtifactStore(settings.artifact_dir, settings.artifact_base_url)
