"""
Request handler. Turns a scan event into a ScanRequest, runs it, and shapes
the response:

{
  "lang": "python",
  "detail": "boto3",
  "result_kind": "count" | "match",
  "result": <int count> | <matching key> | null,
  "strategy": "exhaustive" | "race" | null,
  "time": <seconds, one decimal>
}

Event fields: s3_bucket_name (required), folder, find, region.
"""

import math
import time
from typing import Optional

from scanner import (
    DEFAULT_CHUNK_BYTES,
    DEFAULT_MAX_KEYS,
    DEFAULT_MAX_WORKERS,
    DEFAULT_STRATEGY,
    ScanRequest,
    Scanner,
    clamp_workers,
    normalize_strategy,
)
from store import AWS_REGION, S3_ENDPOINT_URL, ClientRegistry


def request_from_event(event: dict) -> ScanRequest:
    bucket = event.get("s3_bucket_name")
    if not isinstance(bucket, str) or not bucket:
        raise ValueError("s3_bucket_name is required")
    prefix = event.get("folder") or ""
    if not isinstance(prefix, str):
        raise ValueError("folder must be a string")
    find = event.get("find")
    if find is not None:
        if not isinstance(find, str):
            raise ValueError("find must be a string or null")
        try:
            find.encode("utf-8")
        except UnicodeEncodeError:
            raise ValueError("find must be valid UTF-8 text") from None
    return ScanRequest(bucket=bucket, prefix=prefix, find=find)


class RequestHandler:
    def __init__(
        self,
        registry: Optional[ClientRegistry] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        strategy: str = DEFAULT_STRATEGY,
        max_keys: int = DEFAULT_MAX_KEYS,
        chunk_bytes: int = DEFAULT_CHUNK_BYTES,
        endpoint_url: Optional[str] = S3_ENDPOINT_URL,
    ):
        self.max_workers = clamp_workers(max_workers)
        self.registry = registry or ClientRegistry(max_pool_connections=self.max_workers)
        self.strategy = normalize_strategy(strategy)
        self.max_keys = max_keys
        self.chunk_bytes = chunk_bytes
        self.endpoint_url = endpoint_url

    def handle(self, event: dict) -> dict:
        start = time.monotonic()
        request = request_from_event(event)
        store = self.registry.get(region=event.get("region") or AWS_REGION, endpoint_url=self.endpoint_url)
        scanner = Scanner(
            store,
            max_workers=self.max_workers,
            strategy=self.strategy,
            max_keys=self.max_keys,
            chunk_bytes=self.chunk_bytes,
        )
        result = scanner.run(request)
        elapsed = time.monotonic() - start
        return {
            "lang": "python",
            "detail": "boto3",
            "result_kind": result.kind,
            "result": result.value,
            "strategy": result.strategy,
            # halves round up
            "time": math.floor(elapsed * 10 + 0.5) / 10,
        }


def lambda_handler(event, context):
    # a fresh handler per invocation keeps client state scoped to the request
    return RequestHandler().handle(event)
