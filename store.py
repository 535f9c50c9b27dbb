"""
S3 object store collaborator.

Thin wrapper over a boto3 S3 client exposing the two calls the scanner needs:
a single bounded listing page and a chunked content stream. Clients are built
explicitly and cached per (region, endpoint) in a ClientRegistry owned by the
caller, never in a module-level global.
"""

import os
import threading
from typing import Dict, Iterator, List, Optional, Tuple

import boto3
from botocore.config import Config

from scanner import DEFAULT_CHUNK_BYTES, DEFAULT_MAX_KEYS, DEFAULT_MAX_WORKERS, log

AWS_REGION = os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION")
S3_ENDPOINT_URL = os.environ.get("S3_ENDPOINT_URL") or None


def s3_client(region: Optional[str] = None, endpoint_url: Optional[str] = None,
              max_pool_connections: int = DEFAULT_MAX_WORKERS):
    # one pooled connection per worker, otherwise urllib3 discards connections under load
    cfg = Config(region_name=region, max_pool_connections=max_pool_connections)
    kwargs = {"config": cfg}
    if endpoint_url:
        kwargs["endpoint_url"] = endpoint_url
    return boto3.client("s3", **kwargs)


class ObjectStore:
    """Lists keys under a prefix and streams object bodies."""

    def __init__(self, s3_client):
        self.s3 = s3_client

    def list_keys(self, bucket: str, prefix: str = "", max_keys: int = DEFAULT_MAX_KEYS) -> List[str]:
        resp = self.s3.list_objects_v2(Bucket=bucket, Prefix=prefix, MaxKeys=max_keys)
        keys = [obj["Key"] for obj in resp.get("Contents", [])]
        if resp.get("IsTruncated"):
            log(f"Listing of s3://{bucket}/{prefix} truncated at {len(keys)} keys.")
        return keys

    def iter_content(self, bucket: str, key: str, chunk_size: int = DEFAULT_CHUNK_BYTES) -> Iterator[bytes]:
        resp = self.s3.get_object(Bucket=bucket, Key=key)
        body = resp["Body"]
        try:
            for chunk in body.iter_chunks(chunk_size):
                yield chunk
        finally:
            body.close()


class ClientRegistry:
    """
    Keyed cache of ObjectStore instances.

    Stores are keyed by (region, endpoint_url) so buckets served from different
    regions or S3-compatible endpoints each get their own client. A registry
    belongs to whoever constructs it; there is no process-wide instance.
    """

    def __init__(self, max_pool_connections: int = DEFAULT_MAX_WORKERS, client_factory=s3_client):
        self.max_pool_connections = max_pool_connections
        self._client_factory = client_factory
        self._lock = threading.Lock()
        self._stores: Dict[Tuple[Optional[str], Optional[str]], ObjectStore] = {}

    def get(self, region: Optional[str] = AWS_REGION, endpoint_url: Optional[str] = S3_ENDPOINT_URL) -> ObjectStore:
        ident = (region, endpoint_url)
        with self._lock:
            store = self._stores.get(ident)
            if store is None:
                client = self._client_factory(
                    region=region,
                    endpoint_url=endpoint_url,
                    max_pool_connections=self.max_pool_connections,
                )
                store = self._stores[ident] = ObjectStore(client)
            return store

    def __len__(self) -> int:
        return len(self._stores)
