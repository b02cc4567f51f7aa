"""
Batched fusion scheduler.

Pending per-clause generation requests are grouped by their exact
ExpertSignature. A group is released to the generation backend as one batch
when it reaches its maximum size or its maximum wait elapses, whichever
comes first.
"""

import logging
import threading
import time
from concurrent.futures import Future, InvalidStateError, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .config import FusionConfig
from .errors import BatchDispatchError, FusionTimeoutError
from .utils.routing import ExpertSignature, FusionWeights

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ScheduledRequest:
    """One clause waiting for (or holding) its generated text."""

    clause: object
    weights: FusionWeights
    base_context: str = ""
    future: Future = field(default_factory=Future)
    enqueued_at: float = field(default_factory=time.monotonic)

    @property
    def signature(self) -> ExpertSignature:
        return self.weights.signature

    def done(self) -> bool:
        return self.future.done()


@dataclass(eq=False)
class _PendingBatch:
    signature: ExpertSignature
    max_size: int
    deadline: float
    members: List[ScheduledRequest] = field(default_factory=list)


class BatchedFusionScheduler:
    """
    Groups concurrent clause requests sharing an expert signature.

    Requests with overlapping but different supports are never merged.
    Enqueue and release happen under one lock, so a batch is dispatched
    exactly once.
    """

    def __init__(
        self,
        backend,
        config: Optional[FusionConfig] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        diagnostics=None,
    ):
        """
        Initialize scheduler.

        Args:
            backend: GenerationBackend with ``generate_batch(signature, items)``
            config: Fusion configuration (batch limits, worker count)
            executor: Executor for backend calls (owned pool if None)
            diagnostics: Optional FusionDiagnostics fed with batch sizes
        """
        self.backend = backend
        self.config = config or FusionConfig()
        self.diagnostics = diagnostics

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="clausefusion-batch",
        )

        self._lock = threading.Lock()
        self._wakeup = threading.Condition(self._lock)
        self._pending: Dict[ExpertSignature, _PendingBatch] = {}
        self._closed = False

        self._dispatcher = threading.Thread(
            target=self._dispatch_loop, name="clausefusion-dispatcher", daemon=True
        )
        self._dispatcher.start()

    def submit(
        self,
        clause,
        weights: FusionWeights,
        base_context: str = "",
        max_size: Optional[int] = None,
        max_wait: Optional[float] = None,
    ) -> ScheduledRequest:
        """
        Enqueue a clause for batched generation.

        A batch adopts the tightest limits of its members.

        Args:
            clause: Clause to generate
            weights: Non-empty fusion weights
            base_context: Text preceding the clause
            max_size: Batch size limit (config value if None)
            max_wait: Batch wait limit in seconds (config value if None)

        Returns:
            ScheduledRequest whose future resolves to the generated text
        """
        if weights.is_empty():
            raise ValueError("Cannot schedule a clause with empty fusion weights")
        max_size = self.config.batch_max_size if max_size is None else max_size
        max_wait = self.config.batch_max_wait if max_wait is None else max_wait
        if max_size < 1:
            raise ValueError(f"max_size must be at least 1, got {max_size}")

        request = ScheduledRequest(clause, weights, base_context)
        signature = request.signature
        ready = None

        with self._lock:
            if self._closed:
                raise RuntimeError("Scheduler is closed")

            deadline = request.enqueued_at + max(0.0, max_wait)
            batch = self._pending.get(signature)
            if batch is None:
                batch = _PendingBatch(signature, max_size, deadline)
                self._pending[signature] = batch
            else:
                batch.max_size = min(batch.max_size, max_size)
                batch.deadline = min(batch.deadline, deadline)
            batch.members.append(request)

            if len(batch.members) >= batch.max_size:
                ready = self._pending.pop(signature)
            else:
                self._wakeup.notify()

        if ready is not None:
            self._dispatch(ready, reason="full")
        return request

    def wait(self, request: ScheduledRequest, timeout: Optional[float] = None) -> str:
        """
        Block for a request's generated text.

        On timeout the request is detached so its batch is unaffected.

        Raises:
            FusionTimeoutError: If the timeout elapses
            BatchDispatchError: If the backend failed on the request's batch
        """
        try:
            return request.future.result(timeout=timeout)
        except FutureTimeoutError:
            self.detach(request)
            raise FusionTimeoutError(
                f"Timed out waiting for batch {request.signature}"
            ) from None

    def detach(self, request: ScheduledRequest) -> bool:
        """
        Withdraw a request.

        Returns:
            True if the request was still pending and has been removed
        """
        removed = False
        with self._lock:
            batch = self._pending.get(request.signature)
            if batch is not None and request in batch.members:
                batch.members.remove(request)
                removed = True
                if not batch.members:
                    del self._pending[request.signature]
        request.future.cancel()
        if removed:
            logger.debug(f"Detached pending request from batch {request.signature}")
        return removed

    def pending_count(self) -> int:
        with self._lock:
            return sum(len(b.members) for b in self._pending.values())

    def flush(self) -> int:
        """
        Release every pending batch now.

        Returns:
            Number of batches released
        """
        with self._lock:
            batches = list(self._pending.values())
            self._pending.clear()
        for batch in batches:
            self._dispatch(batch, reason="flush")
        return len(batches)

    def close(self, wait: bool = True) -> None:
        """Stop the dispatcher, release pending batches, and shut down the pool."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._wakeup.notify_all()
        self._dispatcher.join()
        self.flush()
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _dispatch_loop(self) -> None:
        with self._lock:
            while not self._closed:
                now = time.monotonic()
                due = [s for s, b in self._pending.items() if b.deadline <= now]
                if not due:
                    if self._pending:
                        next_deadline = min(b.deadline for b in self._pending.values())
                        self._wakeup.wait(timeout=max(0.0, next_deadline - now))
                    else:
                        self._wakeup.wait()
                    continue

                batches = [self._pending.pop(s) for s in due]
                self._lock.release()
                try:
                    for batch in batches:
                        self._dispatch(batch, reason="timer")
                finally:
                    self._lock.acquire()

    def _dispatch(self, batch: _PendingBatch, reason: str) -> None:
        logger.debug(
            f"Dispatching batch {batch.signature} ({len(batch.members)} requests, {reason})"
        )
        self._executor.submit(self._run_batch, batch)

    def _run_batch(self, batch: _PendingBatch) -> None:
        members = [m for m in batch.members if not m.future.cancelled()]
        if not members:
            return

        items = [(m.clause, m.weights, m.base_context) for m in members]
        try:
            texts = list(self.backend.generate_batch(batch.signature, items))
            if len(texts) != len(members):
                raise ValueError(
                    f"Backend returned {len(texts)} outputs for {len(members)} requests"
                )
        except Exception as exc:
            logger.error(
                f"Generation backend failed on batch {batch.signature} "
                f"({len(members)} requests): {exc}"
            )
            self._record(len(members), failed=True)
            for member in members:
                error = BatchDispatchError(
                    f"Batch {batch.signature} failed: {exc}",
                    signature=batch.signature,
                    batch_size=len(members),
                    cause=exc,
                )
                _settle(member.future, exception=error)
            return

        self._record(len(members), failed=False)
        for member, text in zip(members, texts):
            _settle(member.future, result=text)

    def _record(self, size: int, failed: bool) -> None:
        if self.diagnostics is not None:
            self.diagnostics.update_batch(size, failed=failed)


def _settle(future: Future, result=None, exception: Optional[BaseException] = None) -> None:
    # A detached request may have been cancelled concurrently
    try:
        if exception is not None:
            future.set_exception(exception)
        else:
            future.set_result(result)
    except InvalidStateError:
        pass
