"""
Bounded-concurrency prefix scanner.

Lists the objects under one bucket prefix, downloads every object through a
bounded thread pool, and produces one of two results:

  . count mode (no search string). The number of keys listed.
  . search mode. The key of an object whose content contains the search string.

Search mode runs under one of two strategies, chosen per Scanner:

  . exhaustive (default). Every object is read, then the match with the lowest
    listing index wins. Same answer for any pool size.
  . race. The first task to finish with a match publishes it and cancels the
    rest of the request. Cheaper, but the winner is whichever match completes
    first, not necessarily the lowest-index one.

Count mode always reads every object and counts keys listed, so a key whose
download fails is still counted. Per-object failures are logged and treated
as "no match". Only a listing failure fails the request.

Defaults can be set with env vars. See SCANNER_* below.
"""

import concurrent.futures as futures
import os
import sys
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterator, List, Optional, Sequence, Union

from botocore.exceptions import BotoCoreError, ClientError

# ---------------------------
# Defaults and configuration
# ---------------------------

def safe_int(x, default=None):
    try:
        return int(x)
    except (TypeError, ValueError):
        return default

MIN_WORKERS = 1
MAX_WORKERS = 256
MAX_LIST_KEYS = 1000  # one ListObjectsV2 page

DEFAULT_MAX_WORKERS = min(max(safe_int(os.environ.get("SCANNER_MAX_WORKERS"), 32), MIN_WORKERS), MAX_WORKERS)
DEFAULT_MAX_KEYS = min(max(safe_int(os.environ.get("SCANNER_MAX_KEYS"), MAX_LIST_KEYS), 1), MAX_LIST_KEYS)
DEFAULT_CHUNK_BYTES = max(safe_int(os.environ.get("SCANNER_CHUNK_BYTES"), 65536), 1)  # 64 KiB per read

STRATEGY_EXHAUSTIVE = "exhaustive"
STRATEGY_RACE = "race"
STRATEGIES = (STRATEGY_EXHAUSTIVE, STRATEGY_RACE)
DEFAULT_STRATEGY = os.environ.get("SCANNER_STRATEGY", STRATEGY_EXHAUSTIVE)

RESULT_COUNT = "count"
RESULT_MATCH = "match"

# ---------------------------
# Logging
# ---------------------------

def utcnow_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

def log(msg: str) -> None:
    print(f"[{utcnow_iso()}] {msg}", flush=True)

def log_error(msg: str) -> None:
    print(f"[{utcnow_iso()}] {msg}", file=sys.stderr, flush=True)

# ---------------------------
# Data classes
# ---------------------------

class ListingError(Exception):
    """Raised when the keys under a prefix cannot be listed. Fatal for the request."""

    def __init__(self, bucket: str, prefix: str, cause: Exception):
        super().__init__(f"cannot list s3://{bucket}/{prefix}: {cause}")
        self.bucket = bucket
        self.prefix = prefix
        self.cause = cause


@dataclass(frozen=True)
class ScanRequest:
    bucket: str
    prefix: str = ""
    find: Optional[str] = None

    @property
    def search_mode(self) -> bool:
        return self.find is not None


@dataclass(frozen=True)
class TaskOutcome:
    index: int
    key: str
    matched: bool = False
    error: Optional[Exception] = None
    cancelled: bool = False


@dataclass(frozen=True)
class ScanResult:
    kind: str
    value: Union[int, str, None]
    listed: int
    dispatched: int
    errors: int = 0
    cancelled: int = 0
    strategy: Optional[str] = None


def clamp_workers(n) -> int:
    value = safe_int(n)
    if value is None:
        if n is not None:
            log_error(f"Invalid worker count {n!r}. Using {DEFAULT_MAX_WORKERS}.")
        return DEFAULT_MAX_WORKERS
    clamped = min(max(value, MIN_WORKERS), MAX_WORKERS)
    if clamped != value:
        log_error(f"Worker count {value} out of range. Using {clamped}.")
    return clamped


def normalize_strategy(name: Optional[str]) -> str:
    if name in STRATEGIES:
        return name
    log_error(f"Unknown strategy {name!r}. Using {STRATEGY_EXHAUSTIVE}.")
    return STRATEGY_EXHAUSTIVE

# ---------------------------
# Retrieval task
# ---------------------------

def retrieve_object(store, bucket: str, index: int, key: str, needle: Optional[bytes],
                    cancel: threading.Event, chunk_size: int = DEFAULT_CHUNK_BYTES) -> TaskOutcome:
    """
    Read one object to the end and test it for `needle`.

    With needle None (count mode) chunks are drained and dropped. Otherwise the
    body is materialized and matched as a case-sensitive byte substring. The
    cancel event is checked before the fetch and between chunks; a cancelled
    task closes the body and reports cancelled=True.
    """
    if cancel.is_set():
        return TaskOutcome(index=index, key=key, cancelled=True)

    data = bytearray() if needle is not None else None
    try:
        chunks = store.iter_content(bucket, key, chunk_size)
        try:
            for chunk in chunks:
                if cancel.is_set():
                    return TaskOutcome(index=index, key=key, cancelled=True)
                if data is not None:
                    data.extend(chunk)
        finally:
            close = getattr(chunks, "close", None)
            if close is not None:
                close()
    except Exception as e:
        log_error(f"error on {bucket}/{key}: {e}")
        return TaskOutcome(index=index, key=key, error=e)

    return TaskOutcome(index=index, key=key, matched=data is not None and needle in data)

# ---------------------------
# Worker pool
# ---------------------------

class BoundedPool:
    """
    Thread pool running at most max_workers tasks at once.

    submit() blocks the caller until a slot frees, so excess work waits in the
    submitter instead of piling up in the executor queue. A task that raises
    only fails its own future.
    """

    SLOT_POLL_SECONDS = 0.05

    def __init__(self, max_workers: int = DEFAULT_MAX_WORKERS):
        self.max_workers = clamp_workers(max_workers)
        self._slots = threading.BoundedSemaphore(self.max_workers)
        self._executor = futures.ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="scan")
        self._futures: List[futures.Future] = []

    def submit(self, fn: Callable, *args, cancel: Optional[threading.Event] = None) -> Optional[futures.Future]:
        """Admit fn(*args) once a slot is free. Returns None if cancel fires first."""
        while not self._slots.acquire(timeout=self.SLOT_POLL_SECONDS):
            if cancel is not None and cancel.is_set():
                return None
        if cancel is not None and cancel.is_set():
            self._slots.release()
            return None
        try:
            fut = self._executor.submit(fn, *args)
        except RuntimeError:
            self._slots.release()
            raise
        fut.add_done_callback(lambda _: self._slots.release())
        self._futures.append(fut)
        return fut

    def as_completed(self) -> Iterator[futures.Future]:
        return futures.as_completed(list(self._futures))

    def wait(self) -> List[futures.Future]:
        futures.wait(self._futures)
        return list(self._futures)

    def shutdown(self):
        self._executor.shutdown(wait=True)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown()
        return False

# ---------------------------
# Fan-in
# ---------------------------

class MatchSlot:
    """Single-assignment slot for the race strategy. The first offer wins and fires cancel."""

    def __init__(self, cancel: threading.Event):
        self._lock = threading.Lock()
        self._cancel = cancel
        self._outcome: Optional[TaskOutcome] = None

    def offer(self, outcome: TaskOutcome) -> bool:
        with self._lock:
            if self._outcome is not None:
                return False
            self._outcome = outcome
        self._cancel.set()
        return True

    @property
    def outcome(self) -> Optional[TaskOutcome]:
        with self._lock:
            return self._outcome


def select_first_match(outcomes: Sequence[TaskOutcome]) -> Optional[TaskOutcome]:
    """Lowest listing index among matched outcomes, regardless of completion order."""
    best = None
    for o in outcomes:
        if o.matched and (best is None or o.index < best.index):
            best = o
    return best

# ---------------------------
# Scanner
# ---------------------------

class Scanner:
    def __init__(
        self,
        store,
        max_workers: int = DEFAULT_MAX_WORKERS,
        strategy: str = DEFAULT_STRATEGY,
        max_keys: int = DEFAULT_MAX_KEYS,
        chunk_bytes: int = DEFAULT_CHUNK_BYTES,
    ):
        self.store = store
        self.max_workers = clamp_workers(max_workers)
        self.strategy = normalize_strategy(strategy)
        self.max_keys = min(max(safe_int(max_keys, DEFAULT_MAX_KEYS), 1), MAX_LIST_KEYS)
        self.chunk_bytes = max(safe_int(chunk_bytes, DEFAULT_CHUNK_BYTES), 1)

    # ----- listing -----

    def list_keys(self, request: ScanRequest) -> List[str]:
        try:
            keys = self.store.list_keys(request.bucket, request.prefix, self.max_keys)
        except (ClientError, BotoCoreError) as e:
            raise ListingError(request.bucket, request.prefix, e) from e
        log(f"Listed {len(keys)} keys under s3://{request.bucket}/{request.prefix}")
        return list(keys)

    # ----- dispatch -----

    def _dispatch(self, request: ScanRequest, keys: Sequence[str], cancel: threading.Event,
                  slot: Optional[MatchSlot] = None) -> List[TaskOutcome]:
        needle = request.find.encode("utf-8", "surrogatepass") if request.find is not None else None

        def task(index: int, key: str) -> TaskOutcome:
            outcome = retrieve_object(self.store, request.bucket, index, key, needle, cancel, self.chunk_bytes)
            if slot is not None and outcome.matched and slot.offer(outcome):
                log(f"Match published by {key} (index {index}). Cancelling remaining tasks.")
            return outcome

        outcomes: List[TaskOutcome] = []
        with BoundedPool(self.max_workers) as pool:
            for index, key in enumerate(keys):
                if pool.submit(task, index, key, cancel=cancel) is None:
                    break
            # single consumer; completion order is arbitrary
            for fut in pool.as_completed():
                outcomes.append(fut.result())
        return outcomes

    def _result(self, kind: str, value, keys, outcomes, strategy=None) -> ScanResult:
        result = ScanResult(
            kind=kind,
            value=value,
            listed=len(keys),
            dispatched=len(outcomes),
            errors=sum(1 for o in outcomes if o.error is not None),
            cancelled=sum(1 for o in outcomes if o.cancelled),
            strategy=strategy,
        )
        log(f"Done. mode={kind} listed={result.listed} dispatched={result.dispatched} "
            f"errors={result.errors} cancelled={result.cancelled}")
        return result

    # ----- run -----

    def run(self, request: ScanRequest) -> ScanResult:
        keys = self.list_keys(request)

        if not request.search_mode:
            # never cancelled; the count is keys listed, not keys read
            outcomes = self._dispatch(request, keys, threading.Event()) if keys else []
            return self._result(RESULT_COUNT, len(keys), keys, outcomes)

        if not keys:
            return self._result(RESULT_MATCH, None, keys, [], self.strategy)

        if self.strategy == STRATEGY_RACE:
            cancel = threading.Event()
            slot = MatchSlot(cancel)
            outcomes = self._dispatch(request, keys, cancel, slot)
            winner = slot.outcome
        else:
            outcomes = self._dispatch(request, keys, threading.Event())
            winner = select_first_match(outcomes)

        return self._result(RESULT_MATCH, winner.key if winner else None, keys, outcomes, self.strategy)
