"""
Priority-lane request dispatcher.

Requests are queued in three lanes served in strict priority order
(Decision > Narrative > Conversation), FIFO within a lane, each with its
own in-flight cap and obsolescence policy. The dispatcher is the single
place where completion callbacks fire, exactly once per request that is
not superseded.
"""

import concurrent.futures
import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Sequence

from .errors import BrokerError, ErrorKind
from .types import Callback, CallType, Request, Response

logger = logging.getLogger(__name__)


class ObsolescencePolicy(Enum):
    """What happens to older requests when a new one arrives in a lane."""
    NONE = "none"  # every request is distinct
    SUPERSEDE = "supersede"  # newest replaces any pending or in-flight request
    DROP_OLDEST = "drop_oldest"  # pending queue capped, oldest excess dropped


@dataclass(frozen=True)
class Lane:
    """Scheduling rules for one lane."""
    call_type: CallType
    max_in_flight: int
    timeout: float
    policy: ObsolescencePolicy = ObsolescencePolicy.NONE
    max_pending: Optional[int] = None

    def __post_init__(self):
        if self.max_in_flight <= 0:
            raise ValueError("max_in_flight must be > 0")
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")
        if self.policy == ObsolescencePolicy.DROP_OLDEST and not self.max_pending:
            raise ValueError("drop_oldest lanes need max_pending")


def default_lanes(
    decision_timeout: float = 3.0,
    narrative_timeout: float = 10.0,
    conversation_timeout: float = 5.0
) -> Dict[CallType, Lane]:
    """Standard lane table."""
    return {
        CallType.DECISION: Lane(CallType.DECISION, 1, decision_timeout),
        CallType.NARRATIVE: Lane(
            CallType.NARRATIVE, 1, narrative_timeout, ObsolescencePolicy.SUPERSEDE
        ),
        CallType.CONVERSATION: Lane(
            CallType.CONVERSATION, 3, conversation_timeout,
            ObsolescencePolicy.DROP_OLDEST, max_pending=3
        ),
    }


class RequestHandle:
    """Caller's view of a submitted request.

    Wraps a Future that resolves to the Response. Superseded requests are
    cancelled and their callback never fires.
    """

    def __init__(self, request_id: int, call_type: CallType, callback: Optional[Callback] = None):
        self.request_id = request_id
        self.call_type = call_type
        self.future: "concurrent.futures.Future[Response]" = concurrent.futures.Future()
        self._callback = callback
        self._settled = False
        self._superseded = False
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"RequestHandle(id={self.request_id}, call_type={self.call_type.value}, state={self._state()})"

    def _state(self) -> str:
        if self._superseded:
            return "superseded"
        return "done" if self.future.done() else "pending"

    @property
    def superseded(self) -> bool:
        return self._superseded

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: Optional[float] = None) -> Response:
        """Block until the response is available (for tests and tooling, not the main loop).

        Raises:
            ReplayKeyMissing: If replay had no entry for this request
            concurrent.futures.CancelledError: If the request was superseded
        """
        return self.future.result(timeout=timeout)

    def _settle(self) -> bool:
        with self._lock:
            if self._settled:
                return False
            self._settled = True
            return True

    def _deliver(self, response: Response) -> bool:
        if not self._settle():
            return False
        self.future.set_result(response)
        self._invoke(response)
        return True

    def _fail(self, exc: BaseException, response: Response) -> bool:
        if not self._settle():
            return False
        self.future.set_exception(exc)
        self._invoke(response)
        return True

    def _supersede(self) -> bool:
        if not self._settle():
            return False
        self._superseded = True
        self.future.cancel()
        # wakes threads blocked in concurrent.futures.wait on this future
        self.future.set_running_or_notify_cancel()
        return True

    def _invoke(self, response: Response) -> None:
        if self._callback is None:
            return
        try:
            self._callback(response)
        except Exception:
            logger.exception("Callback for request %d raised", self.request_id)


class Dispatcher:
    """Drains priority lanes onto worker threads.

    ``pump()`` is the drain step. With ``auto_drain`` it also runs on every
    submission and completion, so callers never need to drive it.
    """

    def __init__(
        self,
        process: Callable[[Request], Response],
        lanes: Optional[Dict[CallType, Lane]] = None,
        executor: Optional[concurrent.futures.Executor] = None,
        auto_drain: bool = True,
        clock: Callable[[], float] = time.monotonic
    ):
        self.lanes = lanes or default_lanes()
        missing = set(CallType) - set(self.lanes)
        if missing:
            raise ValueError(f"Missing lanes for call types: {sorted(c.value for c in missing)}")

        self._process = process
        self._order: List[CallType] = sorted(self.lanes, key=lambda c: c.priority)
        self._queues: Dict[CallType, Deque[Request]] = {c: deque() for c in self._order}
        self._in_flight: Dict[CallType, int] = {c: 0 for c in self._order}
        self._running: Dict[int, Request] = {}
        self._owns_executor = executor is None
        self._executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=sum(lane.max_in_flight for lane in self.lanes.values()),
            thread_name_prefix="llm-dispatch"
        )
        self.auto_drain = auto_drain
        self._clock = clock
        self._ids = itertools.count(1)
        self._closed = False
        self._lock = threading.Lock()
        self.superseded_count = 0

    def submit(
        self,
        call_type: CallType,
        prompt: str,
        callback: Optional[Callback] = None,
        tick: int = 0,
        entity_ids: Sequence[int] = (),
        occurrence: int = 0
    ) -> RequestHandle:
        """Enqueue a request and return immediately.

        Args:
            call_type: Lane to queue on
            prompt: Prompt text
            callback: Invoked once with the Response unless superseded
            tick: Simulation tick the request belongs to
            entity_ids: Entities the request concerns
            occurrence: Index among same-type requests in this tick

        Raises:
            RuntimeError: If the dispatcher has been shut down
        """
        request_id = next(self._ids)
        handle = RequestHandle(request_id, call_type, callback)
        request = Request(
            id=request_id,
            prompt=prompt,
            call_type=call_type,
            enqueued_at=self._clock(),
            tick=tick,
            occurrence=occurrence,
            entity_ids=tuple(entity_ids),
            callback=callback,
            handle=handle,
        )

        with self._lock:
            if self._closed:
                raise RuntimeError("Dispatcher is shut down")
            obsolete = self._enqueue_locked(request)

        self._discard(obsolete)
        if self.auto_drain:
            self.pump()
        return handle

    def _enqueue_locked(self, request: Request) -> List[Request]:
        lane = self.lanes[request.call_type]
        queue = self._queues[request.call_type]
        obsolete: List[Request] = []

        if lane.policy == ObsolescencePolicy.SUPERSEDE:
            obsolete.extend(queue)
            queue.clear()
            for running in [r for r in self._running.values() if r.call_type == request.call_type]:
                # Discarded in-flight work gives up its slot and stops waiting on the provider
                del self._running[running.id]
                self._in_flight[request.call_type] -= 1
                obsolete.append(running)

        queue.append(request)

        if lane.policy == ObsolescencePolicy.DROP_OLDEST:
            while len(queue) > lane.max_pending:
                obsolete.append(queue.popleft())

        return obsolete

    def _discard(self, obsolete: List[Request]) -> None:
        for request in obsolete:
            if request.handle._supersede():
                self.superseded_count += 1
                logger.debug("Superseded %s request %d", request.call_type.value, request.id)

    def pump(self) -> int:
        """Dispatch every ready request, highest lane first.

        A lane is ready when it has queued work and is under its in-flight cap.

        Returns:
            Number of requests dispatched
        """
        dispatched = 0
        while True:
            with self._lock:
                if self._closed:
                    break
                request = self._next_ready_locked()
                if request is None:
                    break
                self._in_flight[request.call_type] += 1
                self._running[request.id] = request

            logger.debug("Dispatching %s request %d", request.call_type.value, request.id)
            self._executor.submit(self._run, request)
            dispatched += 1
        return dispatched

    def _next_ready_locked(self) -> Optional[Request]:
        for call_type in self._order:
            queue = self._queues[call_type]
            if queue and self._in_flight[call_type] < self.lanes[call_type].max_in_flight:
                return queue.popleft()
        return None

    def _run(self, request: Request) -> None:
        handle: RequestHandle = request.handle
        if handle.superseded:
            return

        error: Optional[BaseException] = None
        try:
            response = self._process(request)
        except BrokerError as exc:
            error = exc
            response = Response.failure(exc.kind, str(exc))
        except Exception as exc:
            logger.exception("Processing %s request %d failed", request.call_type.value, request.id)
            error = exc
            response = Response.failure(ErrorKind.PROVIDER_ERROR, f"{type(exc).__name__}: {exc}")
        finally:
            self._release(request)

        if error is not None:
            delivered = handle._fail(error, response)
        else:
            delivered = handle._deliver(response)
        if not delivered:
            logger.debug("Discarded result of superseded %s request %d", request.call_type.value, request.id)

        if self.auto_drain:
            self.pump()

    def _release(self, request: Request) -> None:
        with self._lock:
            if self._running.pop(request.id, None) is not None:
                self._in_flight[request.call_type] -= 1

    def pending(self, call_type: CallType) -> int:
        with self._lock:
            return len(self._queues[call_type])

    def in_flight(self, call_type: CallType) -> int:
        with self._lock:
            return self._in_flight[call_type]

    def shutdown(self, wait: bool = True) -> int:
        """Stop dispatching; queued requests are cancelled without callbacks.

        Returns:
            Number of queued requests cancelled
        """
        with self._lock:
            self._closed = True
            cancelled = [r for c in self._order for r in self._queues[c]]
            for queue in self._queues.values():
                queue.clear()
        self._discard(cancelled)
        if cancelled:
            logger.info("Cancelled %d queued requests on shutdown", len(cancelled))
        if self._owns_executor:
            self._executor.shutdown(wait=wait)
        return len(cancelled)
