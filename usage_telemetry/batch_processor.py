"""
Batch processor for telemetry delivery.

Drains the tracker's queues on a timer (or on demand), groups records into
size-bounded batches, and sends them through the retry wrapper behind the
circuit breaker. Failed batches go to a bounded dead-letter queue that is
retried once per healthy flush.
"""

import asyncio
import atexit
import functools
import logging
import signal
import sys
import threading
import time
from collections import deque
from typing import Callable, Deque, List, Optional, Sequence, Set, TypeVar, Union

from usage_telemetry.backend import TelemetryBackend
from usage_telemetry.circuit_breaker import TelemetryCircuitBreaker
from usage_telemetry.errors import TelemetryError, TelemetryErrorType
from usage_telemetry.rate_limiter import TelemetryRateLimiter
from usage_telemetry.retry import execute_with_retry
from usage_telemetry.schemas import ProcessorMetrics, TelemetryEvent, WorkflowTelemetry
from usage_telemetry.settings import TelemetrySettings
from usage_telemetry.tracker import TelemetryEventTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")
TelemetryRecord = Union[TelemetryEvent, WorkflowTelemetry]

FLUSH_TIME_SAMPLES = 100
EVENTS = "events"
WORKFLOWS = "workflows"


def create_batches(items: Sequence[T], batch_size: int) -> List[List[T]]:
    """Split items into consecutive batches of at most batch_size."""
    return [list(items[i : i + batch_size]) for i in range(0, len(items), batch_size)]


def deduplicate_workflows(workflows: Sequence[WorkflowTelemetry]) -> List[WorkflowTelemetry]:
    """Keep the first workflow seen for each workflow_hash."""
    seen: Set[str] = set()
    unique: List[WorkflowTelemetry] = []

    for workflow in workflows:
        if workflow.workflow_hash not in seen:
            seen.add(workflow.workflow_hash)
            unique.append(workflow)

    return unique


class TelemetryBatchProcessor:
    """
    Periodic, failure-tolerant delivery of queued telemetry.

    Promises:
    - flush() never raises
    - Overlapping flushes of the same queue kind are skipped, not duplicated
    - At most one dead-letter reprocessing pass per flush, and none while
      another flush holds either queue kind
    """

    def __init__(
        self,
        backend: Optional[TelemetryBackend],
        is_enabled: Callable[[], bool],
        settings: Optional[TelemetrySettings] = None,
        source: Optional[TelemetryEventTracker] = None,
        rate_limiter: Optional[TelemetryRateLimiter] = None,
        circuit_breaker: Optional[TelemetryCircuitBreaker] = None,
        on_error: Optional[Callable[[TelemetryError], None]] = None,
    ):
        """
        Initialize batch processor.

        Args:
            backend: Remote backend; None disables delivery
            is_enabled: Returns whether telemetry is currently enabled
            settings: Pipeline settings
            source: Tracker whose queues are drained by argument-less flushes
            rate_limiter: Limiter whose rejections are reported as rate_limit_hits
            circuit_breaker: Breaker gating delivery attempts
            on_error: Callback for classified internal errors
        """
        self.backend = backend
        self.settings = settings or TelemetrySettings()
        self.source = source
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker or TelemetryCircuitBreaker(
            failure_threshold=self.settings.failure_threshold,
            reset_timeout=self.settings.reset_timeout,
            half_open_requests=self.settings.half_open_requests,
        )
        self._is_enabled = is_enabled
        self._on_error = on_error

        self._metrics = ProcessorMetrics()
        self._flush_times: Deque[float] = deque(maxlen=FLUSH_TIME_SAMPLES)
        self._dead_letter: Deque[TelemetryRecord] = deque()
        self._flushing = {EVENTS: False, WORKFLOWS: False}
        self._lock = threading.RLock()

        self._running = False
        self._timer_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._previous_handlers: dict = {}
        self._atexit_registered = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start periodic flushing and register exit hooks. Idempotent."""
        if self._running:
            return
        if not self._is_enabled() or self.backend is None:
            logger.debug("Telemetry disabled or no backend, batch processor not started")
            return

        self._running = True
        self._timer_task = asyncio.create_task(self._flush_loop())
        self._register_exit_hooks()

        logger.debug(
            f"Telemetry batch processor started (every {self.settings.batch_flush_interval}s)"
        )

    async def stop(self) -> None:
        """Stop periodic flushing and unregister exit hooks. Idempotent."""
        if not self._running:
            return

        self._running = False
        if self._timer_task:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        pending = [task for task in self._inflight if task is not asyncio.current_task()]
        if pending:
            await asyncio.wait(pending, timeout=self.settings.shutdown_timeout)

        self._unregister_exit_hooks()
        logger.debug("Telemetry batch processor stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _flush_loop(self) -> None:
        """Launch a flush every interval without waiting for the previous one."""
        while self._running:
            await asyncio.sleep(self.settings.batch_flush_interval)
            self._spawn(self.flush())

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    async def flush(
        self,
        events: Optional[List[TelemetryEvent]] = None,
        workflows: Optional[List[WorkflowTelemetry]] = None,
    ) -> None:
        """
        Deliver events and workflows.

        With no arguments, the source tracker's queues are drained. Queue
        kinds already being flushed elsewhere are skipped.
        """
        if not self._is_enabled() or self.backend is None:
            return

        events, workflows, claimed = self._claim(events, workflows)
        try:
            await self._flush_claimed(events, workflows, reprocess=len(claimed) == 2)
        except Exception as e:
            self._report(
                TelemetryError(
                    TelemetryErrorType.UNKNOWN_ERROR,
                    "Unexpected telemetry flush failure",
                    {"error": str(e)},
                )
            )
        finally:
            with self._lock:
                for kind in claimed:
                    self._flushing[kind] = False

    async def final_flush(self, timeout: Optional[float] = None) -> bool:
        """
        Best-effort flush bounded by a deadline, used on shutdown.

        Returns:
            True if the flush completed within the deadline
        """
        deadline = timeout if timeout is not None else self.settings.shutdown_timeout
        try:
            await asyncio.wait_for(self.flush(), timeout=deadline)
            return True
        except asyncio.TimeoutError:
            logger.debug(f"Final telemetry flush did not finish within {deadline}s")
        except Exception as e:
            logger.debug(f"Final telemetry flush failed: {e}")
        return False

    def _claim(self, events, workflows):
        """Mark queue kinds as flushing and collect their records."""
        claimed: List[str] = []

        with self._lock:
            for kind, offered in ((EVENTS, events), (WORKFLOWS, workflows)):
                if self._flushing[kind]:
                    if offered:
                        logger.debug(f"Flush of {kind} already running, parking {len(offered)} items")
                        self._add_to_dead_letter(offered)
                else:
                    self._flushing[kind] = True
                    claimed.append(kind)

        if EVENTS in claimed:
            if events is None and self.source is not None:
                events = self.source.drain_events()
        else:
            events = None

        if WORKFLOWS in claimed:
            if workflows is None and self.source is not None:
                workflows = self.source.drain_workflows()
        else:
            workflows = None

        return list(events or []), list(workflows or []), claimed

    async def _flush_claimed(
        self,
        events: List[TelemetryEvent],
        workflows: List[WorkflowTelemetry],
        reprocess: bool = True,
    ) -> None:
        if not events and not workflows:
            if reprocess and self.dead_letter_queue_size:
                await self._process_dead_letter_queue()
            return

        if not self.circuit_breaker.should_allow():
            dropped = len(events) + len(workflows)
            with self._lock:
                self._metrics.events_dropped += dropped
            logger.debug(f"Circuit breaker open - dropped {dropped} telemetry records")
            return

        start_time = time.perf_counter()

        success = await self._deliver_admitted(events, workflows)
        if success:
            self.circuit_breaker.record_success()
        else:
            self.circuit_breaker.record_failure()

        if success and reprocess and self.dead_letter_queue_size:
            await self._process_dead_letter_queue()

        self._record_flush_time((time.perf_counter() - start_time) * 1000)

    async def _deliver_admitted(
        self, events: List[TelemetryEvent], workflows: List[WorkflowTelemetry]
    ) -> bool:
        """
        Deliver after the breaker admitted the attempt.

        A delivery that never finishes (cancelled or raising) is recorded as
        a breaker failure so a half-open trial is never left unaccounted.
        """
        try:
            return await self._deliver(events, workflows)
        except BaseException:
            self.circuit_breaker.record_failure()
            raise

    async def _deliver(
        self, events: List[TelemetryEvent], workflows: List[WorkflowTelemetry]
    ) -> bool:
        """Send all batches. Returns False if any batch failed."""
        success = True

        if events:
            success = await self._send_batches(self.settings.events_table, events) and success

        if workflows:
            unique = deduplicate_workflows(workflows)
            if len(unique) != len(workflows):
                logger.debug(f"Deduplicated workflows: {len(workflows)} -> {len(unique)}")
            success = await self._send_batches(self.settings.workflows_table, unique) and success

        return success

    async def _send_batches(self, table: str, records: Sequence[TelemetryRecord]) -> bool:
        success = True

        for batch in create_batches(records, self.settings.max_batch_size):
            payload = [record.model_dump(mode="json", exclude_none=True) for record in batch]
            result = await execute_with_retry(
                functools.partial(self._insert, table, payload),
                name=f"Flush {table}",
                max_retries=self.settings.max_retries,
                retry_delay=self.settings.retry_delay,
                timeout=self.settings.operation_timeout,
                skip_delays=self.settings.skip_retry_delays,
            )

            with self._lock:
                if result:
                    self._metrics.events_tracked += len(batch)
                    self._metrics.batches_sent += 1
                else:
                    self._metrics.events_failed += len(batch)
                    self._metrics.batches_failed += 1
                    self._add_to_dead_letter(batch)

            if result:
                logger.debug(f"Flushed batch of {len(batch)} records to {table}")
            else:
                success = False
                self._report(
                    TelemetryError(
                        TelemetryErrorType.NETWORK_ERROR,
                        f"Batch delivery to {table} failed",
                        {"batch_size": len(batch)},
                        retryable=True,
                    )
                )

        return success

    async def _insert(self, table: str, payload: list) -> bool:
        await self.backend.insert(table, payload)
        return True

    # ------------------------------------------------------------------
    # Dead-letter queue
    # ------------------------------------------------------------------

    def _add_to_dead_letter(self, items: Sequence[TelemetryRecord]) -> None:
        """Append items, dropping the oldest beyond capacity."""
        overflow = 0
        with self._lock:
            for item in items:
                self._dead_letter.append(item)
                if len(self._dead_letter) > self.settings.dead_letter_size:
                    self._dead_letter.popleft()
                    self._metrics.events_dropped += 1
                    overflow += 1

        logger.debug(f"Added {len(items)} items to dead letter queue")
        if overflow:
            self._report(
                TelemetryError(
                    TelemetryErrorType.QUEUE_OVERFLOW_ERROR,
                    "Dead letter queue full, oldest records dropped",
                    {"dropped": overflow},
                )
            )

    async def _process_dead_letter_queue(self) -> None:
        """One reprocessing pass over the dead-letter queue, gated by the breaker."""
        if not self.circuit_breaker.should_allow():
            return

        with self._lock:
            items = list(self._dead_letter)
            self._dead_letter.clear()
        if not items:
            return

        logger.debug(f"Processing {len(items)} items from dead letter queue")

        events = [item for item in items if isinstance(item, TelemetryEvent)]
        workflows = [item for item in items if isinstance(item, WorkflowTelemetry)]

        if await self._deliver_admitted(events, workflows):
            self.circuit_breaker.record_success()
        else:
            self.circuit_breaker.record_failure()

    @property
    def dead_letter_queue_size(self) -> int:
        with self._lock:
            return len(self._dead_letter)

    def get_dead_letter_queue(self) -> List[TelemetryRecord]:
        with self._lock:
            return list(self._dead_letter)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def _record_flush_time(self, duration_ms: float) -> None:
        with self._lock:
            self._flush_times.append(duration_ms)
            self._metrics.average_flush_time = round(
                sum(self._flush_times) / len(self._flush_times), 2
            )
            self._metrics.last_flush_time = round(duration_ms, 2)

    def get_metrics(self) -> ProcessorMetrics:
        """Snapshot of delivery metrics."""
        with self._lock:
            rate_limit_hits = (
                self.rate_limiter.dropped_events
                if self.rate_limiter is not None
                else self._metrics.rate_limit_hits
            )
            return self._metrics.model_copy(
                update={
                    "rate_limit_hits": rate_limit_hits,
                    "circuit_breaker_state": self.circuit_breaker.get_state(),
                    "dead_letter_queue_size": len(self._dead_letter),
                }
            )

    def reset_metrics(self) -> None:
        """Reset counters, flush history and the circuit breaker."""
        with self._lock:
            self._metrics = ProcessorMetrics()
            self._flush_times.clear()
        if self.rate_limiter is not None:
            self.rate_limiter.reset_dropped_count()
        self.circuit_breaker.reset()

    def _report(self, error: TelemetryError) -> None:
        error.log()
        if self._on_error is not None:
            self._on_error(error)

    # ------------------------------------------------------------------
    # Process exit handling
    # ------------------------------------------------------------------

    def _register_exit_hooks(self) -> None:
        if not self.settings.install_signal_handlers:
            return

        if not self._atexit_registered:
            atexit.register(self._flush_at_exit)
            self._atexit_registered = True

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)
            except ValueError:
                # Signal handlers can only be installed from the main thread
                logger.debug("Not in main thread, skipping telemetry signal handlers")
                break

    def _unregister_exit_hooks(self) -> None:
        if self._atexit_registered:
            atexit.unregister(self._flush_at_exit)
            self._atexit_registered = False

        for signum, handler in self._previous_handlers.items():
            try:
                signal.signal(signum, handler)
            except (ValueError, TypeError):
                pass
        self._previous_handlers.clear()

    def _handle_signal(self, signum, frame) -> None:
        """Flush once with a deadline, then exit the process."""
        logger.info(f"Received signal {signum}, flushing telemetry before exit")

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            self._flush_blocking()
            sys.exit(0)
        else:
            loop.call_soon_threadsafe(self._spawn, self._flush_and_exit())

    async def _flush_and_exit(self) -> None:
        await self.final_flush()
        sys.exit(0)

    def _flush_at_exit(self) -> None:
        self._flush_blocking()

    def _flush_blocking(self) -> None:
        """Run a final flush from synchronous code when no loop is running."""
        try:
            asyncio.run(self.final_flush())
        except Exception as e:
            logger.debug(f"Telemetry flush at exit failed: {e}")
