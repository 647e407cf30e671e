"""
Offline Sync Agent

Client-side layer that keeps a driver/customer app usable without
connectivity:

- Mutations go through ``enqueue_or_send``. Offline (or behind an
  existing backlog) they are appended to a durable queue and replayed
  later by ``drain_queue``, strictly in enqueue order, one at a time.
- Every mutation carries an ``Idempotency-Key`` header, so replaying a
  mutation whose response was lost never applies it twice.
- Reads go through ``get`` and are cached; when the network fails a
  stale cached copy is returned instead of an error.

Failure policy:
    - Transport errors, timeouts, 429 and 5xx are transient and retried
      with exponential backoff.
    - Other 4xx answers are definitive: the mutation is abandoned at once.
    - A mutation that exhausts its retries is moved to the failures list
      and reported through ``on_permanent_failure``; it stays there until
      the user dismisses it.
"""

import asyncio
import enum
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import httpx

from delivery_dispatch.client.local_store import LocalStore
from delivery_dispatch.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})
# sub-resource actions whose effect shows up on the parent resource
ACTION_SUFFIXES = ("/accept",)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class SyncError(Exception):
    """Base class of sync agent failures."""


class TransientNetworkFailure(SyncError):
    """The request may succeed if tried again later."""


class PermanentFailure(SyncError):
    """The request will never succeed as sent."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        mutation: Optional["QueuedMutation"] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.mutation = mutation
        self.body = body


# =============================================================================
# DATA CLASSES
# =============================================================================

class AppState(str, enum.Enum):
    ACTIVE = "active"
    BACKGROUND = "background"


@dataclass
class QueuedMutation:
    """A mutating request waiting to be replayed."""
    idempotency_key: str
    endpoint: str
    method: str
    body: Optional[dict] = None
    created_at: float = field(default_factory=time.time)
    retry_count: int = 0
    next_attempt_at: float = 0.0
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "QueuedMutation":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})


@dataclass
class FailedMutation:
    """A mutation the agent gave up on; shown to the user until dismissed."""
    mutation: QueuedMutation
    reason: str
    status_code: Optional[int] = None
    failed_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "mutation": self.mutation.to_dict(),
            "reason": self.reason,
            "status_code": self.status_code,
            "failed_at": self.failed_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FailedMutation":
        return cls(
            mutation=QueuedMutation.from_dict(data["mutation"]),
            reason=data.get("reason", ""),
            status_code=data.get("status_code"),
            failed_at=data.get("failed_at", 0.0),
        )


@dataclass
class SendResult:
    """Outcome of ``enqueue_or_send``."""
    idempotency_key: str
    sent: bool
    queued: bool
    status_code: Optional[int] = None
    data: Any = None


@dataclass
class DrainReport:
    """What one ``drain_queue`` pass did."""
    sent: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    remaining: int = 0
    # head entry is backing off, or we went offline/background mid-drain
    blocked: bool = False
    responses: dict[str, Any] = field(default_factory=dict)


@dataclass
class ReadResult:
    """A read answer and where it came from ("network", "cache", "stale")."""
    data: Any
    source: str
    fetched_at: float

    @property
    def stale(self) -> bool:
        return self.source == "stale"


# =============================================================================
# AGENT
# =============================================================================

class OfflineSyncAgent:
    """
    Queue-and-replay front of the dispatch API for a mobile client.

    Args:
        base_url: API root, e.g. ``https://dispatch.example/api``
        store: Durable local store
        transport: Optional httpx transport (tests, custom TLS)
        online: Initial connectivity
        on_permanent_failure: Called with each PermanentFailure raised
            while draining
        clock: Wall clock in seconds, injectable for tests
    """

    def __init__(
        self,
        base_url: str,
        store: LocalStore,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        online: bool = True,
        timeout: float = 15.0,
        cache_ttl: float = 3600.0,
        max_retries: int = 5,
        backoff_base: float = 1.0,
        backoff_max: float = 300.0,
        on_permanent_failure: Optional[Callable[[PermanentFailure], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.online = online
        self.app_state = AppState.ACTIVE
        self.cache_ttl = cache_ttl
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.on_permanent_failure = on_permanent_failure
        self._clock = clock
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        self._drain_lock = asyncio.Lock()

        state = store.load()
        self._queue = [QueuedMutation.from_dict(item) for item in state["queue"]]
        self._failures = [FailedMutation.from_dict(item) for item in state["failures"]]
        self._cache: dict[str, dict] = dict(state["cache"])
        if self._queue:
            logger.info(f"Restored {len(self._queue)} queued mutations from {store.path}")

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "OfflineSyncAgent":
        settings = settings or get_settings()
        kwargs.setdefault(
            "store",
            LocalStore(settings.sync_data_directory, lock_timeout=settings.sync_lock_timeout),
        )
        return cls(
            base_url=kwargs.pop("base_url", settings.sync_api_base_url),
            timeout=kwargs.pop("timeout", settings.sync_request_timeout_seconds),
            cache_ttl=kwargs.pop("cache_ttl", settings.sync_cache_ttl_seconds),
            max_retries=kwargs.pop("max_retries", settings.sync_max_retries),
            backoff_base=kwargs.pop("backoff_base", settings.sync_backoff_base_seconds),
            backoff_max=kwargs.pop("backoff_max", settings.sync_backoff_max_seconds),
            **kwargs,
        )

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _persist_queue(self) -> None:
        self.store.save(
            queue=[m.to_dict() for m in self._queue],
            failures=[f.to_dict() for f in self._failures],
        )

    def _persist_cache(self) -> None:
        self.store.save(cache=self._cache)

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _request(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, endpoint, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkFailure(f"{method} {endpoint} timed out") from e
        except httpx.TransportError as e:
            raise TransientNetworkFailure(f"{method} {endpoint} failed: {e}") from e

        if response.status_code >= 500 or response.status_code in TRANSIENT_STATUS_CODES:
            raise TransientNetworkFailure(f"{method} {endpoint} returned {response.status_code}")
        if response.status_code >= 400:
            body = _json_or_text(response)
            detail = body.get("detail") if isinstance(body, dict) else body
            raise PermanentFailure(
                f"{method} {endpoint} rejected ({response.status_code}): {detail}",
                status_code=response.status_code,
                body=body,
            )
        return response

    async def _send(self, mutation: QueuedMutation) -> httpx.Response:
        response = await self._request(
            mutation.method,
            mutation.endpoint,
            json=mutation.body,
            headers={"Idempotency-Key": mutation.idempotency_key},
        )
        self._invalidate_affected(mutation.endpoint)
        return response

    def _invalidate_affected(self, endpoint: str) -> None:
        """Drop cached reads of the resource a mutation changed and of its collection."""
        resource = endpoint.split("?", 1)[0].rstrip("/")
        for action in ACTION_SUFFIXES:
            if resource.endswith(action):
                resource = resource[: -len(action)]
                break
        self.invalidate(resource)
        collection = resource.rsplit("/", 1)[0]
        if collection:
            self.invalidate(collection)

    def backoff_delay(self, retry_count: int) -> float:
        """Delay before the next attempt after ``retry_count`` failures."""
        if retry_count < 1:
            return 0.0
        return min(self.backoff_base * 2 ** (retry_count - 1), self.backoff_max)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def enqueue_or_send(
        self,
        method: str,
        endpoint: str,
        body: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> SendResult:
        """
        Send a mutation now if possible, otherwise queue it for replay.

        Raises:
            PermanentFailure: the server definitively rejected a mutation
                sent immediately (nothing is queued in that case)
        """
        mutation = QueuedMutation(
            idempotency_key=idempotency_key or uuid.uuid4().hex,
            endpoint=endpoint,
            method=method.upper(),
            body=body,
            created_at=self._clock(),
        )
        key = mutation.idempotency_key

        if not self.online:
            self._enqueue(mutation)
            return SendResult(idempotency_key=key, sent=False, queued=True)

        if self._queue:
            # keep enqueue order: go behind the backlog, then drain
            self._enqueue(mutation)
            report = await self.drain_queue()
            if key in report.responses:
                response = report.responses[key]
                return SendResult(key, sent=True, queued=False,
                                  status_code=response.status_code, data=_json_or_text(response))
            if any(m.idempotency_key == key for m in self._queue):
                return SendResult(idempotency_key=key, sent=False, queued=True)
            # completed by a concurrent drain, or failed and listed in failures()
            return SendResult(idempotency_key=key, sent=key not in report.failed, queued=False)

        try:
            response = await self._send(mutation)
        except TransientNetworkFailure as e:
            logger.warning(f"Send failed, queueing {mutation.method} {endpoint}: {e}")
            mutation.retry_count = 1
            mutation.last_error = str(e)
            mutation.next_attempt_at = self._clock() + self.backoff_delay(1)
            self._enqueue(mutation)
            return SendResult(idempotency_key=key, sent=False, queued=True)
        except PermanentFailure as e:
            e.mutation = mutation
            raise

        return SendResult(key, sent=True, queued=False,
                          status_code=response.status_code, data=_json_or_text(response))

    def _enqueue(self, mutation: QueuedMutation) -> None:
        self._queue.append(mutation)
        self._persist_queue()
        logger.info(
            f"Queued {mutation.method} {mutation.endpoint} "
            f"[{mutation.idempotency_key}] ({len(self._queue)} pending)"
        )

    def _give_up(self, mutation: QueuedMutation, failure: PermanentFailure) -> None:
        failure.mutation = mutation
        self._queue.remove(mutation)
        self._failures.append(
            FailedMutation(
                mutation=mutation,
                reason=str(failure),
                status_code=failure.status_code,
                failed_at=self._clock(),
            )
        )
        self._persist_queue()
        logger.error(f"Permanently failed {mutation.method} {mutation.endpoint}: {failure}")

        if self.on_permanent_failure is not None:
            try:
                self.on_permanent_failure(failure)
            except Exception:
                logger.exception("Permanent failure callback raised")

    async def drain_queue(self) -> DrainReport:
        """
        Replay queued mutations in enqueue order, one at a time.

        Stops at the first entry that is still backing off or fails
        transiently (later entries wait behind it), when connectivity drops,
        or when the app is backgrounded.
        """
        async with self._drain_lock:
            report = DrainReport()

            while self._queue:
                if not self.online or self.app_state is AppState.BACKGROUND:
                    report.blocked = True
                    break

                head = self._queue[0]
                if head.next_attempt_at > self._clock():
                    report.blocked = True
                    break

                try:
                    response = await self._send(head)
                except TransientNetworkFailure as e:
                    head.retry_count += 1
                    head.last_error = str(e)
                    if head.retry_count > self.max_retries:
                        self._give_up(head, PermanentFailure(
                            f"Gave up after {head.retry_count} attempts: {e}"
                        ))
                        report.failed.append(head.idempotency_key)
                        continue
                    delay = self.backoff_delay(head.retry_count)
                    head.next_attempt_at = self._clock() + delay
                    self._persist_queue()
                    logger.warning(
                        f"Replay of {head.method} {head.endpoint} failed "
                        f"(attempt {head.retry_count}/{self.max_retries + 1}), retrying in {delay:.1f}s"
                    )
                    report.blocked = True
                    break
                except PermanentFailure as e:
                    self._give_up(head, e)
                    report.failed.append(head.idempotency_key)
                    continue

                self._queue.pop(0)
                self._persist_queue()
                report.sent.append(head.idempotency_key)
                report.responses[head.idempotency_key] = response
                logger.info(f"Replayed {head.method} {head.endpoint} [{head.idempotency_key}]")

            report.remaining = len(self._queue)
            return report

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, endpoint: str, params: Optional[dict] = None) -> ReadResult:
        """
        Cache-assisted read.

        Raises:
            TransientNetworkFailure: network unavailable and nothing cached
            PermanentFailure: the server rejected the read (e.g. 404)
        """
        cache_key = endpoint + ("?" + urlencode(sorted(params.items())) if params else "")
        entry = self._cache.get(cache_key)
        now = self._clock()

        if entry is not None and now - entry["fetched_at"] < self.cache_ttl:
            return ReadResult(data=entry["data"], source="cache", fetched_at=entry["fetched_at"])

        try:
            if not self.online:
                raise TransientNetworkFailure(f"Offline, cannot GET {endpoint}")
            response = await self._request("GET", endpoint, params=params)
        except TransientNetworkFailure:
            if entry is not None:
                logger.info(f"Serving stale cache for {cache_key}")
                return ReadResult(data=entry["data"], source="stale", fetched_at=entry["fetched_at"])
            raise

        data = _json_or_text(response)
        self._cache[cache_key] = {"data": data, "fetched_at": now}
        self._persist_cache()
        return ReadResult(data=data, source="network", fetched_at=now)

    def invalidate(self, endpoint: Optional[str] = None) -> None:
        """Drop cached reads for ``endpoint`` (all when None)."""
        if endpoint is None:
            self._cache.clear()
        else:
            for key in [k for k in self._cache if k == endpoint or k.startswith(endpoint + "?")]:
                del self._cache[key]
        self._persist_cache()

    # -------------------------------------------------------------------------
    # Lifecycle inputs
    # -------------------------------------------------------------------------

    async def on_connectivity_change(self, online: bool) -> Optional[DrainReport]:
        was_online, self.online = self.online, online
        logger.info(f"Connectivity: {'online' if online else 'offline'}")
        if online and not was_online and self.app_state is AppState.ACTIVE:
            return await self.drain_queue()
        return None

    async def on_app_state_change(self, state: "str | AppState") -> Optional[DrainReport]:
        """
        Foreground/background notifications from the host app.

        Backgrounding lets an in-flight mutation finish but keeps the next
        one from starting.
        """
        previous, self.app_state = self.app_state, AppState(state)
        if self.app_state is AppState.ACTIVE and previous is not AppState.ACTIVE and self.online:
            return await self.drain_queue()
        return None

    async def run_periodic(self, interval: float, stop: Optional[asyncio.Event] = None) -> None:
        """Drain every ``interval`` seconds until ``stop`` is set."""
        stop = stop or asyncio.Event()
        while not stop.is_set():
            if self.online and self.app_state is AppState.ACTIVE:
                try:
                    await self.drain_queue()
                except Exception:
                    logger.exception("Periodic drain failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def pending(self) -> list[QueuedMutation]:
        return list(self._queue)

    def failures(self) -> list[FailedMutation]:
        return list(self._failures)

    def dismiss_failure(self, idempotency_key: str) -> bool:
        """Remove an acknowledged failure; False if no such failure."""
        for failed in self._failures:
            if failed.mutation.idempotency_key == idempotency_key:
                self._failures.remove(failed)
                self._persist_queue()
                return True
        return False

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "OfflineSyncAgent":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()


def _json_or_text(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text
