"""Shared fixtures. Puts the project root on sys.path so the top-level modules import without installing."""

import sys
import threading
import time
from pathlib import Path

import pytest
from botocore.exceptions import ClientError

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))


def client_error(code="NoSuchKey", op="GetObject"):
    return ClientError({"Error": {"Code": code, "Message": code}}, op)


class FakeStore:
    """
    In-memory stand-in for store.ObjectStore.

    objects keeps insertion order as listing order. delays maps key -> seconds
    slept before each chunk; failing keys raise ClientError on fetch.
    """

    def __init__(self, objects, delays=None, failing=(), list_error=None, chunk_size=None):
        self.objects = dict(objects)
        self.delays = dict(delays or {})
        self.failing = set(failing)
        self.list_error = list_error
        self.chunk_size = chunk_size
        self.fetched = []
        self.chunks_served = 0
        self.closed = []
        self._lock = threading.Lock()

    def list_keys(self, bucket, prefix="", max_keys=1000):
        if self.list_error is not None:
            raise self.list_error
        return [k for k in self.objects if k.startswith(prefix)][:max_keys]

    def iter_content(self, bucket, key, chunk_size=65536):
        with self._lock:
            self.fetched.append(key)
        if key in self.failing:
            raise client_error()
        size = self.chunk_size or chunk_size
        data = self.objects[key]
        try:
            for i in range(0, max(len(data), 1), size):
                if self.delays.get(key):
                    time.sleep(self.delays[key])
                with self._lock:
                    self.chunks_served += 1
                yield data[i:i + size]
        finally:
            with self._lock:
                self.closed.append(key)


@pytest.fixture
def fake_store_factory():
    return FakeStore
