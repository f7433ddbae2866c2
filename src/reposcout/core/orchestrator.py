"""
Batch Orchestrator - Drives the slow external analysis call across many items.

Each batch is processed by a small pool of async workers fed from a queue.
Every attempt is raced against a per-item timeout, failures are classified,
and retryable ones go back on the queue after an exponential backoff. The
store is the source of truth: workers poll the stored batch status at item
boundaries, which is how stop() and clear() take effect.

Design Pattern: Producer-Consumer + Observer
"""

import asyncio
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Set, Tuple

import structlog

from ..catalog.analysis_client import Analyzer
from ..errors import (
    AnalysisTimeoutError,
    BatchNotFoundError,
    StoreUnavailableError,
    classify_error,
)
from ..storage.records import Batch, BatchItem, BatchStatus, ItemState, utcnow
from ..storage.store import Store
from .rate_limiter import ANALYSIS_CALL, RateLimiter


@dataclass
class BatchConfig:
    """Configuration for batch processing"""
    max_retries: int = 2           # Retries after the first attempt
    base_delay: float = 1.0        # Seconds before the first retry
    item_timeout: float = 120.0    # Seconds per analysis attempt
    concurrency: int = 1           # Workers per batch
    analysis_cache_hours: float = 24.0
    eta_window: int = 10           # Durations kept for the ETA average

    # Health limits, checked between items
    max_runtime: Optional[float] = 1800.0   # Seconds before the batch is stopped
    min_success_rate: float = 0.5
    health_min_items: int = 5               # Finished items needed before the rate counts
    max_consecutive_failures: int = 5       # 0 disables the circuit breaker
    delay_between_items: float = 0.0        # Pause after each item, per worker

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")
        if self.item_timeout <= 0:
            raise ValueError("item_timeout must be positive")
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.eta_window < 1:
            raise ValueError("eta_window must be at least 1")
        if self.max_runtime is not None and self.max_runtime <= 0:
            raise ValueError("max_runtime must be positive")
        if not 0.0 <= self.min_success_rate <= 1.0:
            raise ValueError("min_success_rate must be between 0 and 1")
        if self.health_min_items < 0:
            raise ValueError("health_min_items must not be negative")
        if self.max_consecutive_failures < 0:
            raise ValueError("max_consecutive_failures must not be negative")
        if self.delay_between_items < 0:
            raise ValueError("delay_between_items must not be negative")


def backoff_delay(retry_index: int, base_delay: float = 1.0) -> float:
    """
    Delay before a retry.

    Args:
        retry_index: 0 for the first retry, 1 for the second, ...
        base_delay: Delay before the first retry in seconds

    Returns:
        base_delay * 2^retry_index
    """
    return base_delay * (2 ** retry_index)


@dataclass
class BatchStatusReport:
    """Snapshot of a batch as returned by status()"""
    batch_id: str
    status: BatchStatus
    total: int
    completed: int
    failed: int
    pending: int
    current_item: Optional[str]
    eta_seconds: Optional[float]
    created_at: datetime
    finished_at: Optional[datetime]
    stop_reason: Optional[str] = None
    items: List[BatchItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "status": self.status.value,
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "pending": self.pending,
            "current_item": self.current_item,
            "eta_seconds": None if self.eta_seconds is None else round(self.eta_seconds, 1),
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "stop_reason": self.stop_reason,
            "items": [item.to_dict() for item in self.items],
        }


@dataclass
class _BatchRun:
    """In-process bookkeeping for one active batch"""
    batch_id: str
    queue: asyncio.Queue
    outstanding: int
    durations: Deque[float]
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    running_items: Set[str] = field(default_factory=set)
    retry_tasks: Set[asyncio.Task] = field(default_factory=set)
    task: Optional[asyncio.Task] = None
    closing: bool = False
    fatal: Optional[BaseException] = None
    started_at: float = 0.0        # Event loop time
    completed: int = 0
    failed: int = 0
    consecutive_failures: int = 0


class BatchOrchestrator:
    """
    Runs analysis batches with timeout, bounded retry and cooperative stop.

    start() returns as soon as the batch is persisted; processing continues
    on the running event loop. Only one run per batch id exists per process.

    Example:
        >>> orchestrator = BatchOrchestrator(store, analyzer, rate_limiter)
        >>> batch_id = await orchestrator.start(["owner/a", "owner/b"])
        >>> report = await orchestrator.wait(batch_id)
        >>> report.completed
        2
    """

    def __init__(
        self,
        store: Store,
        analyzer: Analyzer,
        rate_limiter: RateLimiter,
        config: Optional[BatchConfig] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Persistent batch state
            analyzer: Coroutine function performing one analysis
            rate_limiter: Shared limiter (analysis-call resource)
            config: Batch configuration
        """
        self.store = store
        self.analyzer = analyzer
        self.rate_limiter = rate_limiter
        self.config = config or BatchConfig()

        # Active runs by batch id
        self._runs: Dict[str, _BatchRun] = {}

        self.logger = structlog.get_logger(__name__)

        # Observer pattern - callbacks
        self.observers: List[Callable[[str, Dict[str, Any]], None]] = []

    def subscribe(self, observer: Callable[[str, Dict[str, Any]], None]):
        """
        Subscribe to batch events (Observer pattern).

        Args:
            observer: Callback receiving (event, data)
        """
        self.observers.append(observer)
        self.logger.info("observer_subscribed", observer=getattr(observer, "__name__", repr(observer)))

    def _notify_observers(self, event: str, data: Dict[str, Any]):
        """Notify all observers of an event"""
        for observer in self.observers:
            try:
                observer(event, data)
            except Exception as e:
                self.logger.error(
                    "observer_error",
                    observer=getattr(observer, "__name__", repr(observer)),
                    error=str(e),
                )

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    async def start(
        self,
        item_ids: Sequence[str],
        force: bool = False,
        chunk_size: Optional[int] = None,
        start_index: int = 0,
    ) -> str:
        """
        Create a batch and begin processing it in the background.

        Args:
            item_ids: Items to analyze, in submission order
            force: Re-analyze items even if a fresh analysis exists
            chunk_size: Take at most this many items
            start_index: Offset into item_ids where the chunk begins

        Returns:
            Batch ID for tracking
        """
        if start_index < 0:
            raise ValueError("start_index must not be negative")
        if chunk_size is not None and chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")

        end = None if chunk_size is None else start_index + chunk_size
        selected = list(dict.fromkeys(list(item_ids)[start_index:end]))

        skipped_fresh = 0
        if not force and selected:
            since = utcnow() - timedelta(hours=self.config.analysis_cache_hours)
            fresh = await self.store.recently_analyzed(selected, since)
            if fresh:
                selected = [item_id for item_id in selected if item_id not in fresh]
                skipped_fresh = len(fresh)

        now = utcnow()
        batch_id = f"batch_{now.strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"
        options = {
            "force": force,
            "chunk_size": chunk_size,
            "start_index": start_index,
            "requested": len(item_ids),
            "skipped_fresh": skipped_fresh,
        }

        if not selected:
            batch = Batch(
                batch_id=batch_id,
                status=BatchStatus.COMPLETED,
                total=0,
                created_at=now,
                finished_at=now,
                options=options,
            )
            await self.store.create_batch(batch, [])
            self.logger.info("batch_empty", batch_id=batch_id, skipped_fresh=skipped_fresh)
            return batch_id

        batch = Batch(
            batch_id=batch_id,
            status=BatchStatus.RUNNING,
            total=len(selected),
            created_at=now,
            options=options,
        )
        items = [
            BatchItem(batch_id=batch_id, item_id=item_id, position=position)
            for position, item_id in enumerate(selected)
        ]
        await self.store.create_batch(batch, items)

        run = _BatchRun(
            batch_id=batch_id,
            queue=asyncio.Queue(),
            outstanding=len(selected),
            durations=deque(maxlen=self.config.eta_window),
            started_at=asyncio.get_running_loop().time(),
        )
        for item_id in selected:
            run.queue.put_nowait((item_id, 0))

        self._runs[batch_id] = run
        run.task = asyncio.create_task(self._run_batch(run))
        run.task.add_done_callback(self._on_run_done)

        self.logger.info(
            "batch_started",
            batch_id=batch_id,
            total=len(selected),
            skipped_fresh=skipped_fresh,
            config={
                "concurrency": self.config.concurrency,
                "max_retries": self.config.max_retries,
                "item_timeout": self.config.item_timeout,
            },
        )
        self._notify_observers("batch_started", {"batch_id": batch_id, "total": len(selected)})

        return batch_id

    async def stop(self, batch_id: str) -> BatchStatus:
        """
        Request a running batch to stop.

        Idempotent: a batch that is already terminal keeps its status.

        Returns:
            The batch status after the call

        Raises:
            BatchNotFoundError: Unknown batch id
        """
        status = await self.store.get_batch_status(batch_id)
        if status is None:
            raise BatchNotFoundError(batch_id)

        if status is BatchStatus.RUNNING and await self.store.transition_batch(batch_id, BatchStatus.STOPPED):
            status = BatchStatus.STOPPED
            self.logger.info("batch_stop_requested", batch_id=batch_id)
            self._notify_observers("batch_stopped", {"batch_id": batch_id})
        else:
            status = await self.store.get_batch_status(batch_id) or status

        run = self._runs.get(batch_id)
        if run is not None:
            self._shutdown(run)

        return status

    async def clear(self) -> int:
        """
        Delete every batch and batch item.

        Calls already in flight are not cancelled; their results find no
        rows to update and are dropped.

        Returns:
            Number of batches removed
        """
        cleared = await self.store.clear_batches()
        for run in list(self._runs.values()):
            self._shutdown(run)

        self.logger.info("batches_cleared", count=cleared, active_runs=len(self._runs))
        return cleared

    async def status(self, batch_id: str) -> BatchStatusReport:
        """
        Current state of a batch.

        Raises:
            BatchNotFoundError: Unknown (or cleared) batch id
        """
        snapshot = await self.store.get_batch_snapshot(batch_id)
        if snapshot is None:
            raise BatchNotFoundError(batch_id)
        batch, items = snapshot

        run = self._runs.get(batch_id)
        current_item = None
        eta_seconds = None
        if run is not None and batch.status is BatchStatus.RUNNING:
            if run.running_items:
                current_item = sorted(run.running_items)[0]
            if run.durations:
                average = sum(run.durations) / len(run.durations)
                eta_seconds = average * batch.pending_count / self.config.concurrency

        return BatchStatusReport(
            batch_id=batch.batch_id,
            status=batch.status,
            total=batch.total,
            completed=batch.completed_count,
            failed=batch.failed_count,
            pending=batch.pending_count,
            current_item=current_item,
            eta_seconds=eta_seconds,
            created_at=batch.created_at,
            finished_at=batch.finished_at,
            stop_reason=batch.stop_reason,
            items=items,
        )

    async def retry_failed(self, batch_id: str) -> str:
        """
        Start a new batch over the items that exhausted their retries.

        Only failures classified as retryable are picked up; permanent ones
        (not found, missing input, auth) would fail the same way again.

        Returns:
            The new batch id

        Raises:
            BatchNotFoundError: Unknown batch id
        """
        if await self.store.get_batch_status(batch_id) is None:
            raise BatchNotFoundError(batch_id)

        items = await self.store.list_batch_items(batch_id)
        retry_ids = [
            item.item_id
            for item in items
            if item.state is ItemState.FAILED and item.retryable
        ]

        self.logger.info("batch_retry_failed", source_batch_id=batch_id, items=len(retry_ids))
        return await self.start(retry_ids, force=True)

    async def wait(self, batch_id: str, timeout: Optional[float] = None) -> BatchStatusReport:
        """
        Wait until this process has finished working on a batch.

        Args:
            batch_id: Batch to wait for
            timeout: Maximum seconds to wait (None waits indefinitely)

        Returns:
            Final status report
        """
        run = self._runs.get(batch_id)
        if run is not None and run.task is not None:
            await asyncio.wait_for(asyncio.shield(run.task), timeout=timeout)
        return await self.status(batch_id)

    def get_status(self) -> Dict[str, Any]:
        """
        Get in-process orchestrator status.

        Returns:
            Status dictionary
        """
        return {
            "active_batches": len(self._runs),
            "runs": {
                batch_id: {
                    "queued": run.queue.qsize(),
                    "outstanding": run.outstanding,
                    "running_items": sorted(run.running_items),
                    "retries_waiting": len(run.retry_tasks),
                    "consecutive_failures": run.consecutive_failures,
                }
                for batch_id, run in self._runs.items()
            },
            "config": {
                "concurrency": self.config.concurrency,
                "max_retries": self.config.max_retries,
                "base_delay": self.config.base_delay,
                "item_timeout": self.config.item_timeout,
                "max_runtime": self.config.max_runtime,
                "min_success_rate": self.config.min_success_rate,
                "max_consecutive_failures": self.config.max_consecutive_failures,
                "delay_between_items": self.config.delay_between_items,
            },
        }

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _shutdown(self, run: _BatchRun):
        """Abandon pending retries and release every worker"""
        if run.closing:
            return
        run.closing = True
        for task in list(run.retry_tasks):
            task.cancel()
        for _ in range(self.config.concurrency):
            run.queue.put_nowait(None)

    async def _run_batch(self, run: _BatchRun):
        try:
            try:
                async with asyncio.TaskGroup() as tg:
                    for i in range(self.config.concurrency):
                        tg.create_task(self._worker(run, i))
            except Exception as e:
                self.logger.error("batch_workers_crashed", batch_id=run.batch_id, error=str(e))
                run.fatal = run.fatal or e
                self._shutdown(run)

            if run.fatal is not None:
                try:
                    await self.store.transition_batch(run.batch_id, BatchStatus.FAILED)
                except StoreUnavailableError as e:
                    self.logger.error("batch_fail_status_not_persisted", batch_id=run.batch_id, error=str(e))

                self._notify_observers("batch_failed", {"batch_id": run.batch_id, "error": str(run.fatal)})
        finally:
            for task in list(run.retry_tasks):
                task.cancel()
            self._runs.pop(run.batch_id, None)

    def _on_run_done(self, task: asyncio.Task):
        if not task.cancelled() and task.exception() is not None:
            self.logger.error("batch_run_crashed", error=str(task.exception()))

    async def _worker(self, run: _BatchRun, worker_id: int):
        """
        Worker that processes queued items until the batch shuts down.

        Before each item the stored status and the health limits are checked,
        and only then is an analysis-call token taken.

        Args:
            run: The batch being processed
            worker_id: Worker identifier
        """
        self.logger.debug("batch_worker_started", batch_id=run.batch_id, worker_id=worker_id)

        while True:
            entry: Optional[Tuple[str, int]] = await run.queue.get()
            if entry is None:
                break

            item_id, previous_attempts = entry
            try:
                if await self._should_halt(run, worker_id):
                    break

                # Waiting for a token never spends an attempt
                await self.rate_limiter.acquire(ANALYSIS_CALL)
                if run.closing:
                    break

                await self._process_item(run, item_id, previous_attempts + 1)

                if self.config.delay_between_items and not run.closing:
                    await asyncio.sleep(self.config.delay_between_items)

            except StoreUnavailableError as e:
                self.logger.error("batch_store_unavailable", batch_id=run.batch_id, error=str(e))
                run.fatal = e
                self._shutdown(run)
                break
            except Exception as e:
                self.logger.error(
                    "batch_worker_crashed",
                    batch_id=run.batch_id,
                    worker_id=worker_id,
                    item_id=item_id,
                    error=str(e),
                )
                run.fatal = e
                self._shutdown(run)
                break

        self.logger.debug("batch_worker_stopped", batch_id=run.batch_id, worker_id=worker_id)

    async def _should_halt(self, run: _BatchRun, worker_id: int) -> bool:
        """Item boundary check: stored status first, then the health limits"""
        if run.closing:
            return True

        status = await self.store.get_batch_status(run.batch_id)
        if status is None or status.is_terminal:
            self.logger.info(
                "batch_worker_halting",
                batch_id=run.batch_id,
                worker_id=worker_id,
                status=status.value if status else "cleared",
            )
            self._shutdown(run)
            return True

        reason = self._health_violation(run)
        if reason is None:
            return False

        if await self.store.transition_batch(run.batch_id, BatchStatus.STOPPED, reason=reason):
            self.logger.warning(
                "batch_auto_stopped",
                batch_id=run.batch_id,
                reason=reason,
                completed=run.completed,
                failed=run.failed,
                consecutive_failures=run.consecutive_failures,
            )
            self._notify_observers("batch_stopped", {"batch_id": run.batch_id, "reason": reason})
        self._shutdown(run)
        return True

    def _health_violation(self, run: _BatchRun) -> Optional[str]:
        """
        Name of the first health limit the run has crossed, if any.

        Returns:
            "max_runtime", "max_consecutive_failures", "min_success_rate" or None
        """
        config = self.config
        elapsed = asyncio.get_running_loop().time() - run.started_at
        if config.max_runtime is not None and elapsed >= config.max_runtime:
            return "max_runtime"

        if config.max_consecutive_failures and run.consecutive_failures >= config.max_consecutive_failures:
            return "max_consecutive_failures"

        finished = run.completed + run.failed
        if finished > config.health_min_items and run.completed / finished < config.min_success_rate:
            return "min_success_rate"

        return None

    async def _process_item(self, run: _BatchRun, item_id: str, attempts: int):
        """One analysis attempt and the resulting state transition"""
        if not await self.store.mark_item_running(run.batch_id, item_id, attempts):
            self._shutdown(run)
            return

        run.running_items.add(item_id)
        loop = asyncio.get_running_loop()
        started = loop.time()
        error: Optional[Exception] = None

        try:
            result = await asyncio.wait_for(self.analyzer(item_id), timeout=self.config.item_timeout)
            await self.store.save_analysis(item_id, result)
        except asyncio.TimeoutError:
            error = AnalysisTimeoutError(
                f"Analysis of {item_id} timed out after {self.config.item_timeout}s"
            )
        except StoreUnavailableError:
            raise
        except Exception as e:
            # Includes a result the store cannot serialise
            error = e
        finally:
            run.running_items.discard(item_id)

        elapsed = loop.time() - started
        run.durations.append(elapsed)
        item = BatchItem(
            batch_id=run.batch_id,
            item_id=item_id,
            position=0,  # Not written by record_item_result
            attempts=attempts,
            duration_ms=int(elapsed * 1000),
        )

        if error is None:
            item.state = ItemState.SUCCESS
            await self._record(run, item, completed_delta=1)
            self.logger.info("batch_item_completed", batch_id=run.batch_id, item_id=item_id, attempts=attempts)
            self._notify_observers("item_completed", {"batch_id": run.batch_id, "item_id": item_id})
            return

        classified = classify_error(error)
        item.error_kind = classified.kind.value
        item.retryable = classified.retryable
        item.error_message = classified.message

        if classified.retryable and attempts <= self.config.max_retries and not run.closing:
            item.state = ItemState.PENDING
            if not await self._record(run, item):
                return

            delay = backoff_delay(attempts - 1, self.config.base_delay)
            self.logger.warning(
                "batch_item_retry_scheduled",
                batch_id=run.batch_id,
                item_id=item_id,
                attempts=attempts,
                error_kind=classified.kind.value,
                delay_seconds=delay,
            )
            task = asyncio.create_task(self._requeue_after(run, item_id, attempts, delay))
            run.retry_tasks.add(task)
            task.add_done_callback(run.retry_tasks.discard)
            return

        if classified.retryable and attempts <= self.config.max_retries:
            # Stopping: the item keeps its budget and stays pending
            item.state = ItemState.PENDING
            await self._record(run, item)
            return

        item.state = ItemState.FAILED
        await self._record(run, item, failed_delta=1)
        self.logger.error(
            "batch_item_failed",
            batch_id=run.batch_id,
            item_id=item_id,
            attempts=attempts,
            error_kind=classified.kind.value,
            retryable=classified.retryable,
            error=classified.message,
        )
        self._notify_observers(
            "item_failed",
            {"batch_id": run.batch_id, "item_id": item_id, "error_kind": classified.kind.value},
        )

    async def _record(self, run: _BatchRun, item: BatchItem, completed_delta: int = 0, failed_delta: int = 0) -> bool:
        """Persist a transition; finish the batch once every item is terminal"""
        async with run.lock:
            if not await self.store.record_item_result(item, completed_delta, failed_delta):
                self.logger.info("batch_item_result_dropped", batch_id=run.batch_id, item_id=item.item_id)
                self._shutdown(run)
                return False

            if completed_delta:
                run.completed += 1
                run.consecutive_failures = 0
            if failed_delta:
                run.failed += 1
                run.consecutive_failures += 1

            if completed_delta or failed_delta:
                run.outstanding -= 1
                if run.outstanding == 0:
                    if await self.store.transition_batch(run.batch_id, BatchStatus.COMPLETED):
                        batch = await self.store.get_batch(run.batch_id)
                        self.logger.info(
                            "batch_completed",
                            batch_id=run.batch_id,
                            completed=batch.completed_count if batch else None,
                            failed=batch.failed_count if batch else None,
                        )
                        self._notify_observers("batch_completed", {"batch_id": run.batch_id})
                    self._shutdown(run)
            return True

    async def _requeue_after(self, run: _BatchRun, item_id: str, attempts: int, delay: float):
        await asyncio.sleep(delay)
        if not run.closing:
            run.queue.put_nowait((item_id, attempts))
