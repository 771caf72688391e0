"""SimPy runner for rejoin attempts.

Bridges orchestrator generators with a SimPy environment. The orchestrator
yields bare floats (poll delays in ms); the runner turns each into a SimPy
timeout so many attempts can wait concurrently on one event loop.

The runner is the ONLY place SimPy is used. With realtime=True the
environment is a simpy.rt.RealtimeEnvironment paced against the wall clock
(realtime_factor seconds per simulated millisecond); otherwise simulated
time advances instantly, which is what tests and the simulator use.

Usage:
    runner = RejoinRunner(orchestrator)
    result = runner.rejoin("db2:3306")
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Generator, List, Optional, Sequence

import simpy
import simpy.rt

from readmit.ledger import Ledger
from readmit.orchestrator import RejoinOrchestrator, RejoinResult

logger = logging.getLogger(__name__)


class RejoinRunner:
    """Runs rejoin attempts on a SimPy environment and records results."""

    def __init__(
        self,
        orchestrator: RejoinOrchestrator,
        ledger: Ledger | None = None,
        realtime: bool = False,
        realtime_factor: float = 0.001,
    ):
        if realtime_factor <= 0:
            raise ValueError(f"realtime_factor must be > 0, got {realtime_factor}")
        self._orchestrator = orchestrator
        self._ledger = ledger if ledger is not None else Ledger()
        self._realtime = realtime
        self._realtime_factor = realtime_factor
        self._env: Optional[simpy.Environment] = None

    @property
    def ledger(self) -> Ledger:
        return self._ledger

    @property
    def now(self) -> float:
        """Current time of the last environment (ms), 0 before any run."""
        return self._env.now if self._env is not None else 0.0

    def _make_env(self) -> simpy.Environment:
        if self._realtime:
            return simpy.rt.RealtimeEnvironment(factor=self._realtime_factor, strict=False)
        return simpy.Environment()

    def rejoin(self, instance_id: str) -> RejoinResult:
        """Rejoin a single instance and block until it reaches a terminal state."""
        return self.run([instance_id])[0]

    def run(
        self,
        instance_ids: Sequence[str],
        cancel_after_ms: Dict[str, float] | None = None,
        on_result: Callable[[RejoinResult], None] | None = None,
    ) -> List[RejoinResult]:
        """Rejoin several instances concurrently.

        Args:
            instance_ids: Targets; duplicates raise ConcurrentRejoinError
                before anything is started.
            cancel_after_ms: Optional per-target cancellation times.
            on_result: Called as each attempt finishes.

        Returns:
            Results in the order of instance_ids.
        """
        unknown = sorted(set(cancel_after_ms or {}) - set(instance_ids))
        if unknown:
            raise ValueError(f"Cannot schedule cancellation of unknown targets {unknown}")

        attempts = []
        try:
            for instance_id in instance_ids:
                attempts.append(self._orchestrator.start(instance_id))
        except Exception:
            for attempt in attempts:
                self._orchestrator.discard(attempt)
            raise

        env = self._make_env()
        self._env = env
        processes = [
            env.process(self._execute(env, attempt, on_result))
            for attempt in attempts
        ]
        for instance_id, delay in (cancel_after_ms or {}).items():
            attempt = next(a for a in attempts if a.instance_id == instance_id)
            env.process(self._cancel_later(env, attempt, delay))

        if processes:
            env.run(until=env.all_of(processes))
        return [p.value for p in processes]

    def cancel(self, instance_id: str) -> bool:
        """Cancel an in-flight attempt. Returns False if none is active."""
        attempt = self._orchestrator.active(instance_id)
        if attempt is None:
            return False
        attempt.cancel()
        return True

    def _execute(
        self,
        env: simpy.Environment,
        attempt,
        on_result: Callable[[RejoinResult], None] | None,
    ) -> Generator:
        gen = self._orchestrator.execute(attempt)
        result = yield from self._drive_generator(env, gen)
        self._ledger.record(result)
        if on_result is not None:
            on_result(result)
        return result

    @staticmethod
    def _cancel_later(env: simpy.Environment, attempt, delay_ms: float) -> Generator:
        yield env.timeout(delay_ms)
        if not attempt.is_terminal:
            logger.info(f"Cancelling rejoin of {attempt.instance_id} at {env.now:.0f} ms")
            attempt.cancel()

    @staticmethod
    def _drive_generator(
        env: simpy.Environment,
        gen: Generator[float, None, RejoinResult],
    ) -> Generator:
        """Bridge a delay-yielding generator with SimPy timeouts.

        Returns the generator's return value (RejoinResult).
        """
        try:
            delay = next(gen)
        except StopIteration as e:
            return e.value

        while True:
            yield env.timeout(delay)
            try:
                delay = gen.send(None)
            except StopIteration as e:
                return e.value
