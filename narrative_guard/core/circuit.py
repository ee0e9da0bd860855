"""
Per-provider circuit breaking.

A provider that fails repeatedly is taken out of the rotation for a
cool-down period instead of adding its timeout to every request.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, Optional

from narrative_guard.config.models import CircuitBreakerConfig

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Skipped until the cool-down ends
    HALF_OPEN = "half_open"  # One trial request allowed
    DISABLED = "disabled"    # Skipped until the configuration is reloaded


@dataclass
class ProviderCircuit:
    """Circuit state for a single provider."""
    provider_name: str
    state: CircuitState = CircuitState.CLOSED
    failures: Deque[float] = field(default_factory=deque)
    open_until: Optional[float] = None
    trial_in_flight: bool = False
    reason: str = ""


class CircuitBreaker:
    """Tracks provider health from consecutive failures.

    ``failure_threshold`` consecutive failures within ``failure_window_seconds``
    open the circuit for ``cooldown_seconds``. After the cool-down a single
    trial request is let through: success closes the circuit, failure opens
    it again. Any success resets the failure streak.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig,
        clock: Callable[[], float] = time.monotonic
    ):
        self.config = config
        self._clock = clock
        self._circuits: Dict[str, ProviderCircuit] = {}
        self._lock = threading.Lock()

    def _get_circuit(self, provider_name: str) -> ProviderCircuit:
        if provider_name not in self._circuits:
            self._circuits[provider_name] = ProviderCircuit(provider_name=provider_name)
        return self._circuits[provider_name]

    def allow(self, provider_name: str) -> bool:
        """Check whether a request may be sent to the provider now."""
        with self._lock:
            circuit = self._get_circuit(provider_name)

            if circuit.state == CircuitState.CLOSED:
                return True
            if circuit.state == CircuitState.DISABLED:
                return False
            if circuit.state == CircuitState.OPEN:
                if circuit.open_until is not None and self._clock() >= circuit.open_until:
                    circuit.state = CircuitState.HALF_OPEN
                    circuit.trial_in_flight = True
                    logger.info("Circuit for %s half-open, allowing a trial request", provider_name)
                    return True
                return False

            # Half-open: only one trial at a time
            if circuit.trial_in_flight:
                return False
            circuit.trial_in_flight = True
            return True

    def record_success(self, provider_name: str) -> None:
        with self._lock:
            circuit = self._get_circuit(provider_name)
            if circuit.state == CircuitState.DISABLED:
                return
            if circuit.state == CircuitState.HALF_OPEN:
                logger.info("Circuit for %s closed after successful trial", provider_name)
            circuit.state = CircuitState.CLOSED
            circuit.failures.clear()
            circuit.open_until = None
            circuit.trial_in_flight = False

    def record_failure(self, provider_name: str, reason: str = "") -> None:
        with self._lock:
            circuit = self._get_circuit(provider_name)
            if circuit.state == CircuitState.DISABLED:
                return
            now = self._clock()
            circuit.reason = reason

            if circuit.state == CircuitState.HALF_OPEN:
                self._open(circuit, now)
                return

            circuit.failures.append(now)
            window_start = now - self.config.failure_window_seconds
            while circuit.failures and circuit.failures[0] < window_start:
                circuit.failures.popleft()
            if len(circuit.failures) >= self.config.failure_threshold:
                self._open(circuit, now)

    def release(self, provider_name: str) -> None:
        """Give back a half-open trial slot whose request never completed."""
        with self._lock:
            circuit = self._get_circuit(provider_name)
            if circuit.state == CircuitState.HALF_OPEN:
                circuit.trial_in_flight = False

    def disable(self, provider_name: str, reason: str = "") -> None:
        """Remove a provider from rotation until this breaker is replaced."""
        with self._lock:
            circuit = self._get_circuit(provider_name)
            circuit.state = CircuitState.DISABLED
            circuit.reason = reason
            circuit.trial_in_flight = False
        logger.warning("Provider %s disabled until configuration reload: %s", provider_name, reason)

    def state(self, provider_name: str) -> CircuitState:
        with self._lock:
            return self._get_circuit(provider_name).state

    def snapshot(self) -> Dict[str, Dict]:
        """Status of every provider seen so far."""
        with self._lock:
            return {
                name: {
                    "state": circuit.state.value,
                    "recent_failures": len(circuit.failures),
                    "open_until": circuit.open_until,
                    "reason": circuit.reason,
                }
                for name, circuit in self._circuits.items()
            }

    def _open(self, circuit: ProviderCircuit, now: float) -> None:
        circuit.state = CircuitState.OPEN
        circuit.open_until = now + self.config.cooldown_seconds
        circuit.failures.clear()
        circuit.trial_in_flight = False
        logger.warning(
            "Circuit for %s opened for %.1fs: %s",
            circuit.provider_name, self.config.cooldown_seconds, circuit.reason
        )
