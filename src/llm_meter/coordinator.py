import asyncio
import enum
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping

import structlog

from llm_meter.config import normalize_provider_name
from llm_meter.errors import UnsupportedProviderError
from llm_meter.metrics import MetricsUpdater
from llm_meter.models import (
    ConnectionOutcome,
    ConnectionTestResult,
    ProviderSettings,
)
from llm_meter.provider.base import ProviderAdapter

logger = structlog.get_logger()

DEFAULT_LOG_CAPACITY = 100


class ConnectionTestState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ConnectionLogEntry:
    timestamp: "datetime"
    # "info" or "error"
    level: "str"
    event: "str"
    detail: "str"
    http_status: "int | None" = None
    duration: "float | None" = None

    @classmethod
    def from_result(cls, result: "ConnectionTestResult") -> "ConnectionLogEntry":
        if result.succeeded:
            return cls(
                timestamp=result.timestamp,
                level="info",
                event="test_succeeded",
                detail=result.detail or "Connection test completed successfully.",
                http_status=result.http_status,
                duration=result.duration,
            )
        return cls(
            timestamp=result.timestamp,
            level="error",
            event="test_failed",
            detail=result.detail or "Connection test failed.",
            http_status=result.http_status,
            duration=result.duration,
        )


class ConnectionLog:
    """
    ConnectionLog is a fixed-capacity ring buffer of test log
    entries. Appending to a full log evicts the oldest entry.
    """

    def __init__(self, capacity: "int" = DEFAULT_LOG_CAPACITY) -> "None":
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._entries: "deque[ConnectionLogEntry]" = deque(maxlen=capacity)

    @property
    def capacity(self) -> "int":
        return self._entries.maxlen or 0

    def append(self, entry: "ConnectionLogEntry") -> "None":
        self._entries.append(entry)

    def clear(self) -> "None":
        self._entries.clear()

    def entries(self) -> "list[ConnectionLogEntry]":
        return list(self._entries)

    def __len__(self) -> "int":
        return len(self._entries)


@dataclass(frozen=True, slots=True)
class _TestCompleted:
    provider: "str"
    result: "ConnectionTestResult"


class ConnectionTestCoordinator:
    """
    ConnectionTestCoordinator runs provider connection tests as
    background tasks so callers are never blocked on the network.

    Each provider moves IDLE -> RUNNING -> SUCCEEDED/FAILED. Finished
    tests post a message to a queue; a single consumer task applies
    those messages, which is the only place test state, the latest
    result and the per-provider log change after a trigger. At most
    one test per provider is in flight, and results that arrive after
    every observer stopped waiting are still recorded.
    """

    def __init__(
        self,
        adapters: "Mapping[str, ProviderAdapter]",
        metrics: "MetricsUpdater | None" = None,
        log_capacity: "int" = DEFAULT_LOG_CAPACITY,
    ) -> "None":
        self._adapters = adapters
        self._metrics = metrics
        self._log_capacity = log_capacity
        self._states: "dict[str, ConnectionTestState]" = {}
        self._latest: "dict[str, ConnectionTestResult]" = {}
        self._logs: "dict[str, ConnectionLog]" = {}
        self._tasks: "dict[str, asyncio.Task[None]]" = {}
        self._waiters: "dict[str, asyncio.Future[ConnectionTestResult]]" = {}
        self._queue: "asyncio.Queue[_TestCompleted] | None" = None
        self._consumer: "asyncio.Task[None] | None" = None

    def state(self, provider: "str") -> "ConnectionTestState":
        return self._states.get(
            normalize_provider_name(provider), ConnectionTestState.IDLE
        )

    def latest(self, provider: "str") -> "ConnectionTestResult | None":
        return self._latest.get(normalize_provider_name(provider))

    def is_verified(self, provider: "str") -> "bool":
        """
        True when the most recent completed test for the provider
        succeeded.
        """
        result = self.latest(provider)
        return result is not None and result.succeeded

    def log(self, provider: "str") -> "list[ConnectionLogEntry]":
        log = self._logs.get(normalize_provider_name(provider))
        return log.entries() if log is not None else []

    def clear_log(self, provider: "str") -> "None":
        """
        empties the provider's test log. Latest status is kept.
        """
        log = self._logs.get(normalize_provider_name(provider))
        if log is not None:
            log.clear()

    def _ensure_consumer(self) -> "asyncio.Queue[_TestCompleted]":
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume(self._queue))
        return self._queue

    def trigger_test(
        self,
        provider: "str",
        credential: "str",
        settings: "ProviderSettings | None" = None,
    ) -> "bool":
        """
        starts a connection test in the background. Returns False
        without starting anything when a test for the provider is
        already running. Must be called from a running event loop.
        """
        provider = normalize_provider_name(provider)
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise UnsupportedProviderError(provider)

        if self._states.get(provider) is ConnectionTestState.RUNNING:
            logger.debug("connection_test_already_running", provider=provider)
            return False

        queue = self._ensure_consumer()
        loop = asyncio.get_running_loop()
        self._states[provider] = ConnectionTestState.RUNNING
        self._waiters[provider] = loop.create_future()
        self._tasks[provider] = asyncio.create_task(
            self._run(
                provider,
                adapter,
                credential,
                settings or ProviderSettings(),
                queue,
            )
        )
        logger.info("connection_test_started", provider=provider)
        return True

    async def wait_for(self, provider: "str") -> "ConnectionTestResult | None":
        """
        waits for the in-flight test of a provider, or returns the
        latest result when nothing is running.
        """
        provider = normalize_provider_name(provider)
        waiter = self._waiters.get(provider)
        if waiter is None:
            return self._latest.get(provider)
        # shield so a cancelled observer does not cancel the shared future
        return await asyncio.shield(waiter)

    async def _run(
        self,
        provider: "str",
        adapter: "ProviderAdapter",
        credential: "str",
        settings: "ProviderSettings",
        queue: "asyncio.Queue[_TestCompleted]",
    ) -> "None":
        started = time.monotonic()
        try:
            result = await adapter.test_connection(credential, settings)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("connection_test_error", provider=provider)
            result = ConnectionTestResult(
                provider=provider,
                timestamp=datetime.now(timezone.utc),
                outcome=ConnectionOutcome.FAILURE,
                duration=time.monotonic() - started,
                detail=f"Background test task failed: {exc}",
            )
        await queue.put(_TestCompleted(provider, result))

    async def _consume(self, queue: "asyncio.Queue[_TestCompleted]") -> "None":
        while True:
            message = await queue.get()
            try:
                self._apply(message)
            finally:
                queue.task_done()

    def _apply(self, message: "_TestCompleted") -> "None":
        provider, result = message.provider, message.result

        self._latest[provider] = result
        self._states[provider] = (
            ConnectionTestState.SUCCEEDED
            if result.succeeded
            else ConnectionTestState.FAILED
        )
        log = self._logs.setdefault(provider, ConnectionLog(self._log_capacity))
        log.append(ConnectionLogEntry.from_result(result))
        self._tasks.pop(provider, None)

        if self._metrics is not None:
            self._metrics.record_connection_test(result)

        logger.info(
            "connection_test_finished",
            provider=provider,
            outcome=result.outcome.value,
            http_status=result.http_status,
            duration=round(result.duration, 3),
            detail=result.detail,
        )

        waiter = self._waiters.pop(provider, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(result)

    async def close(self) -> "None":
        """
        cancels in-flight tests and stops the consumer.
        """
        pending = [*self._tasks.values()]
        if self._consumer is not None:
            pending.append(self._consumer)

        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for provider in self._tasks:
            self._states[provider] = ConnectionTestState.IDLE
        for waiter in self._waiters.values():
            waiter.cancel()

        self._tasks.clear()
        self._waiters.clear()
        self._consumer = None
        self._queue = None
