"""
Circuit Breaker - Remote Product Failure Protection
Version: 1.0

Stops hammering a Bokun product that keeps failing.
After 3 consecutive failures, the product is SKIPPED for 60 seconds.

NO business logic - purely infrastructure pattern.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional


logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failures detected - blocking calls
    HALF_OPEN = "half_open"  # Probing whether the remote recovered


@dataclass
class CircuitMetrics:
    """Counters for a single circuit."""
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: Optional[float] = None
    state: CircuitState = CircuitState.CLOSED
    opened_at: Optional[float] = None


class CircuitOpenError(Exception):
    """Raised when a circuit is open and calls are blocked."""

    def __init__(self, key: str, retry_in: float):
        super().__init__(f"Circuit for {key} is open, retry in {retry_in:.0f}s")
        self.key = key
        self.retry_in = retry_in


class CircuitBreaker:
    """
    Circuit breaker keyed by remote resource (one circuit per Bokun product).

    Pattern:
    - CLOSED: calls go through
    - OPEN: too many failures, calls raise CircuitOpenError
    - HALF_OPEN: after the cool-down, calls go through; one success closes,
      one failure reopens
    """

    FAILURE_THRESHOLD = 3
    OPEN_DURATION_SECONDS = 60

    def __init__(
        self,
        failure_threshold: Optional[int] = None,
        open_duration: Optional[float] = None,
        clock=time.monotonic
    ):
        self.failure_threshold = failure_threshold or self.FAILURE_THRESHOLD
        self.open_duration = open_duration if open_duration is not None else self.OPEN_DURATION_SECONDS
        self.circuits: Dict[str, CircuitMetrics] = {}
        self._clock = clock
        self._lock = asyncio.Lock()

    async def call(self, key: str, func, *args, **kwargs):
        """
        Execute an async function through the circuit for `key`.

        Raises:
            CircuitOpenError: If the circuit is open
            Original exception: If the function fails
        """
        async with self._lock:
            circuit = self._get_circuit(key)
            if circuit.state == CircuitState.OPEN:
                if self._time_until_reset(circuit) <= 0:
                    circuit.state = CircuitState.HALF_OPEN
                    logger.info(f"Circuit HALF_OPEN: {key}")
                else:
                    raise CircuitOpenError(key, self._time_until_reset(circuit))

        try:
            result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception:
            await self._record_failure(key)
            raise

        await self._record_success(key)
        return result

    async def _record_success(self, key: str) -> None:
        async with self._lock:
            circuit = self._get_circuit(key)
            circuit.success_count += 1
            circuit.failure_count = 0
            if circuit.state != CircuitState.CLOSED:
                circuit.state = CircuitState.CLOSED
                circuit.opened_at = None
                logger.info(f"Circuit CLOSED: {key}")

    async def _record_failure(self, key: str) -> None:
        async with self._lock:
            circuit = self._get_circuit(key)
            circuit.failure_count += 1
            circuit.success_count = 0
            circuit.last_failure_time = self._clock()

            if circuit.state == CircuitState.HALF_OPEN or circuit.failure_count >= self.failure_threshold:
                circuit.state = CircuitState.OPEN
                circuit.opened_at = self._clock()
                logger.warning(f"Circuit OPEN: {key} (failures: {circuit.failure_count})")

    def _get_circuit(self, key: str) -> CircuitMetrics:
        if key not in self.circuits:
            self.circuits[key] = CircuitMetrics()
        return self.circuits[key]

    def _time_until_reset(self, circuit: CircuitMetrics) -> float:
        if circuit.opened_at is None:
            return 0.0
        remaining = self.open_duration - (self._clock() - circuit.opened_at)
        return max(0.0, remaining)

    def state(self, key: str) -> CircuitState:
        circuit = self.circuits.get(key)
        return circuit.state if circuit else CircuitState.CLOSED

    async def reset(self, key: str) -> None:
        """Manually close a circuit."""
        async with self._lock:
            if key in self.circuits:
                self.circuits[key] = CircuitMetrics()
                logger.info(f"Circuit manually reset: {key}")
