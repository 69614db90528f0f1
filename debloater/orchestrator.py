"""
Action Orchestrator -- Android Debloater

Applies debloat actions to (device, package) pairs and reports exactly one
result per request.

Execution model:
    * one worker per target device; a device's requests run strictly in
      submission order (its package manager is a single-writer resource)
    * workers for different devices run concurrently, bounded by a semaphore
    * results are pushed to a queue as they complete and consumed through an
      async iterator, so a caller can show progress while the batch runs
    * no retries inside a run: re-submit ``report.failed_requests()`` instead

Per request:
    device not targetable            -> DEVICE_UNAVAILABLE (executor not called)
    package already in target state  -> ALREADY_IN_STATE
    command plan succeeds            -> SUCCESS
    anything else                    -> FAILED with the underlying ErrorContext

Architecture:
    ActionOrchestrator.apply(requests)
      |
      +-- BatchRun            -- async iterator of ActionResult, cancel(), wait()
            |
            +-- worker/device -- query_state -> build_plan -> run_plan
                                 (debloater.actions, debloater.executor)

Usage:
    from debloater.orchestrator import ActionOrchestrator, ActionRequest
    from debloater.actions import Action

    orchestrator = ActionOrchestrator(executor, registry)
    run = orchestrator.apply([ActionRequest("R5CT123ABCD", "com.example.bloat", Action.DISABLE)])
    async for result in run:
        print(result.device_id, result.package, result.outcome.value)
    report = await run.wait()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

from debloater.actions import (
    TARGET_STATE,
    Action,
    PackageState,
    build_plan,
    query_state,
    run_plan,
)
from debloater.config import COMMAND_TIMEOUT, MAX_PARALLEL_DEVICES, USER_ID
from debloater.errors import ErrorCode, ErrorContext
from debloater.executor import CommandExecutor
from debloater.registry import DeviceRegistry, DeviceState

logger = logging.getLogger("orchestrator")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ===================================================================
# DATA CLASSES
# ===================================================================

class Outcome(str, Enum):
    SUCCESS = "success"
    ALREADY_IN_STATE = "already_in_state"
    FAILED = "failed"
    DEVICE_UNAVAILABLE = "device_unavailable"


@dataclass(frozen=True)
class ActionRequest:
    """(device, package, action) triple."""
    device_id: str
    package: str
    action: Action

    def __post_init__(self) -> None:
        if not isinstance(self.action, Action):
            object.__setattr__(self, "action", Action(self.action))


@dataclass(frozen=True)
class ActionResult:
    """Outcome of one request.  Produced once, never mutated."""
    request: ActionRequest
    outcome: Outcome
    error: Optional[ErrorContext] = field(default=None, compare=False)
    previous_state: Optional[PackageState] = None
    sequence: int = 0                 # submission index within the run
    elapsed_ms: float = 0.0
    finished_at: str = field(default_factory=_now_iso, compare=False)

    @property
    def device_id(self) -> str:
        return self.request.device_id

    @property
    def package(self) -> str:
        return self.request.package

    @property
    def succeeded(self) -> bool:
        return self.outcome in (Outcome.SUCCESS, Outcome.ALREADY_IN_STATE)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "package": self.package,
            "action": self.request.action.value,
            "outcome": self.outcome.value,
            "error": self.error.to_dict() if self.error else None,
            "previous_state": self.previous_state.value if self.previous_state else None,
            "sequence": self.sequence,
            "elapsed_ms": self.elapsed_ms,
            "finished_at": self.finished_at,
        }


@dataclass
class BatchReport:
    """All results of one run, in arrival order."""
    results: List[ActionResult] = field(default_factory=list)
    cancelled: bool = False

    def counts(self) -> Dict[str, int]:
        totals = {o.value: 0 for o in Outcome}
        for r in self.results:
            totals[r.outcome.value] += 1
        return totals

    def in_submission_order(self) -> List[ActionResult]:
        return sorted(self.results, key=lambda r: r.sequence)

    def by_device(self) -> Dict[str, List[ActionResult]]:
        grouped: Dict[str, List[ActionResult]] = {}
        for r in self.in_submission_order():
            grouped.setdefault(r.device_id, []).append(r)
        return dict(sorted(grouped.items()))

    def failed(self) -> List[ActionResult]:
        """FAILED and DEVICE_UNAVAILABLE results, in submission order."""
        return [r for r in self.in_submission_order() if not r.succeeded]

    def failed_requests(self) -> List[ActionRequest]:
        """Requests worth re-submitting as a new run."""
        return [r.request for r in self.failed()]

    @property
    def all_succeeded(self) -> bool:
        return all(r.succeeded for r in self.results)


ProgressCallback = Callable[[ActionResult], None]


# ===================================================================
# BATCH RUN
# ===================================================================

class BatchRun:
    """
    One orchestrator invocation over a list of requests.

    Workers start on first iteration (or on ``wait()``).  Iterating a
    finished run replays its results.
    """

    def __init__(
        self,
        orchestrator: ActionOrchestrator,
        requests: List[ActionRequest],
        progress: Optional[ProgressCallback] = None,
        max_parallel: int = MAX_PARALLEL_DEVICES,
    ) -> None:
        self._orchestrator = orchestrator
        self._requests = list(requests)
        self._progress = progress
        self._max_parallel = max(1, int(max_parallel))
        self._queue: "asyncio.Queue[ActionResult]" = asyncio.Queue()
        self._cancel_event = asyncio.Event()
        self._workers: List[asyncio.Task] = []
        self._results: List[ActionResult] = []
        self._consuming = False
        self._done = False

    def __len__(self) -> int:
        return len(self._requests)

    @property
    def done(self) -> bool:
        return self._done

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """
        Request cancellation.  In-flight commands finish or hit their
        timeout; requests not yet started resolve to FAILED(CANCELLED).
        """
        if not self._cancel_event.is_set():
            logger.info("Batch cancellation requested")
            self._cancel_event.set()

    def report(self) -> BatchReport:
        return BatchReport(results=list(self._results), cancelled=self.cancelled)

    async def wait(self) -> BatchReport:
        """Drain the run and return its report."""
        async for _ in self:
            pass
        return self.report()

    def __aiter__(self) -> AsyncIterator[ActionResult]:
        if self._done:
            return self._replay()
        if self._consuming:
            raise RuntimeError("BatchRun is already being consumed")
        return self._iterate()

    async def _replay(self) -> AsyncIterator[ActionResult]:
        for result in list(self._results):
            yield result

    async def _iterate(self) -> AsyncIterator[ActionResult]:
        self._consuming = True
        self._start()
        total = len(self._requests)
        try:
            while len(self._results) < total:
                result = await self._queue.get()
                self._record(result)
                yield result
            await asyncio.gather(*self._workers)
            self._done = True
            counts = self.report().counts()
            logger.info(
                "Batch finished: %d result(s) %s%s",
                total, counts, " (cancelled)" if self.cancelled else "",
            )
        except asyncio.CancelledError:
            # Consumer cancelled: stop workers (killing running commands) and
            # account for every request before propagating.
            self._cancel_event.set()
            for task in self._workers:
                task.cancel()
            await asyncio.gather(*self._workers, return_exceptions=True)
            self._drain()
            self._done = True
            raise
        finally:
            self._consuming = False
            if not self._done:
                # Consumer stopped early: let workers wind down on their own.
                self._cancel_event.set()

    def _record(self, result: ActionResult) -> None:
        self._results.append(result)
        if self._progress is not None:
            try:
                self._progress(result)
            except Exception:
                logger.exception("Progress callback failed")

    def _drain(self) -> None:
        while not self._queue.empty():
            self._record(self._queue.get_nowait())

    def _start(self) -> None:
        if self._workers or not self._requests:
            return
        groups: "OrderedDict[str, List[Tuple[int, ActionRequest]]]" = OrderedDict()
        for idx, req in enumerate(self._requests):
            groups.setdefault(req.device_id, []).append((idx, req))

        logger.info(
            "Batch started: %d request(s) across %d device(s)",
            len(self._requests), len(groups),
        )
        semaphore = asyncio.Semaphore(self._max_parallel)
        self._workers = [
            asyncio.create_task(self._worker(serial, items, semaphore), name=f"debloat-{serial}")
            for serial, items in groups.items()
        ]

    async def _worker(
        self,
        serial: str,
        items: List[Tuple[int, ActionRequest]],
        semaphore: asyncio.Semaphore,
    ) -> None:
        pending = list(items)
        try:
            async with semaphore:
                while pending:
                    idx, req = pending[0]
                    if self._cancel_event.is_set():
                        result = self._orchestrator.cancelled_result(req, idx)
                    else:
                        try:
                            result = await self._orchestrator.execute(req, sequence=idx)
                        except asyncio.CancelledError:
                            raise
                        except Exception as exc:
                            logger.exception("Unexpected error on %s/%s", serial, req.package)
                            result = ActionResult(
                                request=req,
                                outcome=Outcome.FAILED,
                                error=ErrorContext(ErrorCode.INTERNAL_ERROR, str(exc)),
                                sequence=idx,
                            )
                    pending.pop(0)
                    self._queue.put_nowait(result)
        except asyncio.CancelledError:
            for idx, req in pending:
                self._queue.put_nowait(self._orchestrator.cancelled_result(req, idx))
            raise


# ===================================================================
# ORCHESTRATOR
# ===================================================================

class ActionOrchestrator:
    """
    Applies actions through the executor, reading device state from the
    registry.  Never mutates registry records.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        registry: DeviceRegistry,
        *,
        force: bool = False,
        user_id: int = USER_ID,
        command_timeout: float = COMMAND_TIMEOUT,
        max_parallel: int = MAX_PARALLEL_DEVICES,
    ) -> None:
        self._executor = executor
        self._registry = registry
        self.force = force
        self.user_id = user_id
        self.command_timeout = float(command_timeout)
        self.max_parallel = max_parallel

    def apply(
        self,
        requests: Iterable[ActionRequest],
        progress: Optional[ProgressCallback] = None,
    ) -> BatchRun:
        """Create a fresh run; results stream out as the run is iterated."""
        return BatchRun(self, list(requests), progress=progress, max_parallel=self.max_parallel)

    async def apply_all(self, requests: Iterable[ActionRequest]) -> BatchReport:
        return await self.apply(requests).wait()

    async def execute(self, request: ActionRequest, sequence: int = 0) -> ActionResult:
        """Resolve one request to its result."""
        start = time.monotonic()
        serial = request.device_id

        def _done(outcome: Outcome, **kwargs: Any) -> ActionResult:
            return ActionResult(
                request=request,
                outcome=outcome,
                sequence=sequence,
                elapsed_ms=round((time.monotonic() - start) * 1000, 2),
                **kwargs,
            )

        if not self._registry.targetable(serial, force=self.force):
            return _done(Outcome.DEVICE_UNAVAILABLE, error=self._unavailable_error(serial))

        api_level = await self._registry.api_level(serial)
        query = await query_state(
            self._executor, serial, request.package,
            user_id=self.user_id, timeout=self.command_timeout,
        )
        if not query.ok:
            outcome, error = self._classify_failure(serial, query.error)
            return _done(outcome, error=error)

        current = query.state
        target = TARGET_STATE[request.action]
        if current == target:
            logger.debug("%s/%s already %s", serial, request.package, target.value)
            return _done(Outcome.ALREADY_IN_STATE, previous_state=current)
        if current == PackageState.ABSENT:
            if request.action == Action.UNINSTALL:
                return _done(Outcome.ALREADY_IN_STATE, previous_state=current)
            return _done(
                Outcome.FAILED,
                previous_state=current,
                error=ErrorContext(
                    ErrorCode.PACKAGE_NOT_FOUND,
                    f"{request.package} is not installed on {serial}",
                ),
            )

        plan = build_plan(request.action, request.package, api_level, current, self.user_id)
        result = await run_plan(self._executor, serial, plan, timeout=self.command_timeout)
        if result.ok:
            logger.info("%s: %s %s (was %s)", serial, request.action.value, request.package, current.value)
            return _done(Outcome.SUCCESS, previous_state=current)

        outcome, error = self._classify_failure(serial, result.error)
        logger.warning("%s: %s %s failed: %s", serial, request.action.value, request.package, error)
        return _done(outcome, error=error, previous_state=current)

    def cancelled_result(self, request: ActionRequest, sequence: int = 0) -> ActionResult:
        return ActionResult(
            request=request,
            outcome=Outcome.FAILED,
            error=ErrorContext(ErrorCode.CANCELLED, "batch cancelled before this request ran"),
            sequence=sequence,
        )

    def _classify_failure(
        self, serial: str, error: Optional[ErrorContext],
    ) -> Tuple[Outcome, ErrorContext]:
        error = error or ErrorContext(ErrorCode.INTERNAL_ERROR, "unknown failure")
        dev = self._registry.get(serial)
        if dev is None or dev.state == DeviceState.MISSING:
            # unplugged while the command ran; the cause code no longer matters
            return Outcome.DEVICE_UNAVAILABLE, self._unavailable_error(serial, cause=error)
        if error.device_level and not self._registry.targetable(serial, force=self.force):
            return Outcome.DEVICE_UNAVAILABLE, self._unavailable_error(serial, cause=error)
        return Outcome.FAILED, error

    def _unavailable_error(self, serial: str, cause: Optional[ErrorContext] = None) -> ErrorContext:
        dev = self._registry.get(serial)
        state = dev.state.value if dev else "unknown"
        details: Dict[str, Any] = {"state": state}
        if cause is not None:
            details["cause"] = cause.to_dict()
        return ErrorContext(ErrorCode.DEVICE_UNAVAILABLE, f"device {serial} is {state}", details)
