"""
Strava Rate Limiter & Request Queue

Every outbound Strava call goes through ONE RequestScheduler per process:

- RateWindow: sliding 15-minute window capped at STRAVA_RATE_LIMIT_QUOTA
  (90, buffered below Strava's published 100). Each issued HTTP call is
  recorded, including token refreshes and failed attempts.
- RequestScheduler: priority queue (1 = highest, FIFO within a tier) drained
  by a single sender. Blocks while the window is exhausted (re-check every
  STRAVA_THROTTLE_POLL_S), resolves a fresh token through the
  CredentialManager, executes the call, then waits
  STRAVA_MIN_REQUEST_SPACING_S before the next one.
- Retries: a retryable failure is re-enqueued with retry_count + 1 and its
  priority lowered by one tier, up to STRAVA_MAX_RETRIES; after that the
  request is dropped, its future fails and failed_count is incremented.

Callers get a concurrent.futures.Future per request and block on it, so many
concurrent sync runs feel back-pressure instead of errors. The window and the
queue are only touched by the scheduler.

Deployment note: the window is per process. Run the Celery queue that
performs Strava syncs with a single worker process (-c 1) so one scheduler
is the sole rate-limit authority.
"""
from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple
from uuid import uuid4

from core.config import settings
from core.exceptions import (
    CredentialNotFound,
    RateLimitExceeded,
    RefreshFailed,
    UpstreamHTTPError,
)
from core.cache import get_cache, set_cache
from core.logging import log_fields
from services import strava_service
from services.strava_credentials import CredentialManager

logger = logging.getLogger(__name__)

HIGHEST_PRIORITY = 1
DEFAULT_PRIORITY = 2
LOWEST_PRIORITY = 3


class RequestKind(str, Enum):
    FETCH_ACTIVITY = "activity"
    FETCH_ATHLETE = "athlete"
    REFRESH_TOKEN = "refresh"
    LIST_ACTIVITIES = "list_activities"


@dataclass
class QueuedRequest:
    user_id: str
    kind: RequestKind
    activity_id: Optional[int] = None
    priority: int = DEFAULT_PRIORITY
    params: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid4().hex)
    enqueued_at: float = 0.0
    retry_count: int = 0
    future: Future = field(default_factory=Future, repr=False, compare=False)


class RateWindow:
    """Sliding-window counter of issued upstream calls."""

    def __init__(
        self,
        quota: Optional[int] = None,
        window_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.quota = int(quota if quota is not None else settings.STRAVA_RATE_LIMIT_QUOTA)
        self.window_s = float(window_s if window_s is not None else settings.STRAVA_RATE_WINDOW_S)
        self._clock = clock
        self._sent: Deque[float] = deque()

    def _prune(self) -> None:
        now = self._clock()
        while self._sent and now - self._sent[0] >= self.window_s:
            self._sent.popleft()

    def can_proceed(self, n: int = 1) -> bool:
        self._prune()
        return len(self._sent) + n <= self.quota

    def record_sent(self) -> None:
        self._sent.append(self._clock())

    def usage(self) -> Dict[str, Any]:
        self._prune()
        used = len(self._sent)
        return {
            "used": used,
            "limit": self.quota,
            "percentage": round(used / self.quota * 100, 2),
        }


class RequestScheduler:
    def __init__(
        self,
        credentials: Optional[CredentialManager] = None,
        window: Optional[RateWindow] = None,
        client: Any = strava_service,
        sleep: Callable[[float], None] = time.sleep,
        min_spacing_s: Optional[float] = None,
        poll_s: Optional[float] = None,
        max_retries: Optional[int] = None,
        on_status: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self.credentials = credentials or CredentialManager()
        self.window = window or RateWindow()
        self._client = client
        self._sleep = sleep
        self.min_spacing_s = settings.STRAVA_MIN_REQUEST_SPACING_S if min_spacing_s is None else min_spacing_s
        self.poll_s = settings.STRAVA_THROTTLE_POLL_S if poll_s is None else poll_s
        self.max_retries = settings.STRAVA_MAX_RETRIES if max_retries is None else max_retries
        self._on_status = on_status

        self._heap: List[Tuple[int, int, QueuedRequest]] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        # Held while draining: guarantees a single sender even if run_pending()
        # is called while the background worker is alive.
        self._drain_lock = threading.Lock()
        self._stop = threading.Event()
        self._worker: Optional[threading.Thread] = None

        self.processed_count = 0
        self.failed_count = 0

    # --- queue -------------------------------------------------------------

    def enqueue(self, request: QueuedRequest) -> Future:
        with self._cond:
            request.enqueued_at = time.time()
            heapq.heappush(self._heap, (request.priority, next(self._seq), request))
            self._cond.notify()
        logger.debug(
            f"Queued request: {request.kind.value} (priority: {request.priority})",
            extra=log_fields(request_id=request.id, user_id=request.user_id),
        )
        return request.future

    def submit(
        self,
        user_id: str,
        kind: RequestKind,
        activity_id: Optional[int] = None,
        priority: int = DEFAULT_PRIORITY,
        **params: Any,
    ) -> Future:
        return self.enqueue(
            QueuedRequest(user_id=user_id, kind=kind, activity_id=activity_id, priority=priority, params=params)
        )

    def call(self, user_id: str, kind: RequestKind, activity_id: Optional[int] = None,
             priority: int = DEFAULT_PRIORITY, **params: Any) -> Any:
        """
        Enqueue and wait for the result.

        Without a running background worker the queue is drained inline by
        the calling thread.
        """
        future = self.submit(user_id, kind, activity_id=activity_id, priority=priority, **params)
        if not self.is_running:
            self.run_pending()
        return future.result()

    def queued(self) -> int:
        with self._cond:
            return len(self._heap)

    def _pop(self) -> Optional[QueuedRequest]:
        with self._cond:
            if not self._heap:
                return None
            return heapq.heappop(self._heap)[2]

    def _requeue(self, request: QueuedRequest) -> None:
        with self._cond:
            heapq.heappush(self._heap, (request.priority, next(self._seq), request))
            self._cond.notify()

    # --- processing --------------------------------------------------------

    def _wait_for_window(self, required: int) -> None:
        while not self.window.can_proceed(required):
            logger.info(
                f"Rate limit reached, waiting {self.poll_s}s...",
                extra=log_fields(**self.window.usage(), queued=self.queued()),
            )
            self._sleep(self.poll_s)

    def run_pending(self, should_stop: Optional[Callable[[], bool]] = None) -> int:
        """Drain the queue in the current thread. Returns the number of requests handled."""
        handled = 0
        with self._drain_lock:
            while True:
                if should_stop and should_stop():
                    break
                with self._cond:
                    has_work = bool(self._heap)
                if not has_work:
                    break
                self._wait_for_window(1)
                request = self._pop()
                if request is None:
                    break
                self._process(request)
                handled += 1
        return handled

    def _process(self, request: QueuedRequest) -> None:
        try:
            result = self._execute(request)
        except (CredentialNotFound, RefreshFailed) as e:
            # Retrying cannot fix a missing or revoked credential.
            self._fail(request, e)
        except UpstreamHTTPError as e:
            if e.retryable:
                self._retry_or_fail(request, e)
            else:
                self._fail(request, e)
        except RateLimitExceeded as e:
            self._retry_or_fail(request, e)
        except Exception as e:
            logger.exception(f"Unexpected error executing {request.kind.value} request {request.id}")
            self._fail(request, e)
        else:
            self.processed_count += 1
            request.future.set_result(result)
        finally:
            if self._on_status:
                self._on_status(self.status())
            if self.min_spacing_s:
                self._sleep(self.min_spacing_s)

    def _execute(self, request: QueuedRequest) -> Any:
        logger.debug(f"Executing: {request.kind.value} for user {request.user_id}")

        if request.kind == RequestKind.REFRESH_TOKEN:
            self._wait_for_window(1)
            self.window.record_sent()
            return self.credentials.refresh(request.user_id)

        # A pre-flight refresh is one more upstream call; reserve room for it.
        needs_refresh = self.credentials.needs_refresh(request.user_id)
        self._wait_for_window(2 if needs_refresh else 1)
        if needs_refresh:
            self.window.record_sent()
        token = self.credentials.get_valid_token(request.user_id)

        self.window.record_sent()
        if request.kind == RequestKind.FETCH_ACTIVITY:
            return self._client.get_activity(token, request.activity_id)
        if request.kind == RequestKind.FETCH_ATHLETE:
            return self._client.get_athlete(token)
        if request.kind == RequestKind.LIST_ACTIVITIES:
            return self._client.list_activities(token, **request.params)
        raise ValueError(f"Unknown request kind: {request.kind}")

    def _retry_or_fail(self, request: QueuedRequest, error: Exception) -> None:
        if request.retry_count < self.max_retries:
            request.retry_count += 1
            request.priority = min(request.priority + 1, LOWEST_PRIORITY)
            logger.warning(
                f"Request {request.kind.value} failed, retry {request.retry_count}/{self.max_retries}: {error}",
                extra=log_fields(request_id=request.id, user_id=request.user_id, priority=request.priority),
            )
            self._requeue(request)
            return
        self._fail(request, error)

    def _fail(self, request: QueuedRequest, error: Exception) -> None:
        self.failed_count += 1
        logger.error(
            f"Dropping {request.kind.value} request for user {request.user_id}: {error}",
            extra=log_fields(request_id=request.id, retry_count=request.retry_count),
        )
        request.future.set_exception(error)

    # --- background worker -------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._worker = threading.Thread(target=self._worker_loop, name="strava-scheduler", daemon=True)
        self._worker.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        with self._cond:
            self._cond.notify_all()
        if self._worker is not None:
            self._worker.join(timeout)
        self._worker = None

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            with self._cond:
                while not self._heap and not self._stop.is_set():
                    self._cond.wait(timeout=1.0)
            if self._stop.is_set():
                break
            self.run_pending(should_stop=self._stop.is_set)

    def status(self) -> Dict[str, Any]:
        status = self.window.usage()
        status.update(
            queued=self.queued(),
            processed=self.processed_count,
            failed=self.failed_count,
            running=self.is_running,
        )
        return status


# Process-wide scheduler (singleton)
_scheduler: Optional[RequestScheduler] = None
_scheduler_lock = threading.Lock()


def get_scheduler() -> RequestScheduler:
    """Get the process-wide scheduler, starting its worker thread on first use."""
    global _scheduler
    with _scheduler_lock:
        if _scheduler is None:
            _scheduler = RequestScheduler(on_status=publish_status)
            _scheduler.start()
        return _scheduler


SCHEDULER_STATUS_KEY = "strava:scheduler:status"


def publish_status(status: Dict[str, Any]) -> None:
    """Share the worker's window usage with the API process (best effort)."""
    set_cache(SCHEDULER_STATUS_KEY, status, ttl=int(settings.STRAVA_RATE_WINDOW_S))


def read_status() -> Dict[str, Any]:
    """Last status published by a worker, else this process's own scheduler (idle if none)."""
    published = get_cache(SCHEDULER_STATUS_KEY)
    if published:
        return published
    if _scheduler is not None:
        return _scheduler.status()
    status = RateWindow().usage()
    status.update(queued=0, processed=0, failed=0, running=False)
    return status
