"""
Haven — Connection State Machine

Tracks the lifecycle: DISCONNECTED → CONNECTING → CONNECTED.
RECONNECTING is only ever reported by the transport layer's own recovery
logic; the core never enters it on its own, it just reflects it.

Internal transitions (begin/establish/reset) are validated against the
table below.  Externally reported states are accepted as given.  Every
change is logged and recorded in the transition history.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

logger = logging.getLogger("haven.state")


class ConnectionState(str, Enum):
    """Live transport connection states."""
    DISCONNECTED = "disconnected"    # Initial / terminal
    CONNECTING = "connecting"        # Bootstrap in flight or transport negotiating
    CONNECTED = "connected"          # Live conversation
    RECONNECTING = "reconnecting"    # Transport recovering (external signal only)

    @classmethod
    def coerce(cls, value: object) -> "ConnectionState":
        try:
            return cls(value)
        except ValueError:
            return cls.DISCONNECTED


# Legal transitions the core may drive itself
_INTERNAL_TRANSITIONS: Dict[ConnectionState, Set[ConnectionState]] = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING:   {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED},
    ConnectionState.CONNECTED:    {ConnectionState.DISCONNECTED},
    ConnectionState.RECONNECTING: {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED},
}


class ConnectionStateMachine:
    """
    Records connection-state changes and notifies a listener.

    Usage:
        sm = ConnectionStateMachine(on_transition=my_callback)
        sm.transition(ConnectionState.CONNECTING)          # internal, validated
        sm.reflect(ConnectionState.RECONNECTING, "ice")    # external, accepted
        sm.reset()
    """

    def __init__(
        self,
        on_transition: Optional[Callable[[ConnectionState, ConnectionState, str], None]] = None,
        session_label: str = "-",
    ) -> None:
        self._state = ConnectionState.DISCONNECTED
        self._on_transition = on_transition
        self._history: List[Dict] = []
        self._entered_at = time.time()
        self.session_label = session_label

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def history(self) -> List[Dict]:
        return list(self._history)

    def transition(self, target: ConnectionState, reason: str = "") -> None:
        """Core-driven transition. Raises ValueError when illegal."""
        if target == self._state:
            return

        allowed = _INTERNAL_TRANSITIONS.get(self._state, set())
        if target not in allowed:
            raise ValueError(
                f"Illegal connection transition: {self._state.value} → {target.value}. "
                f"Allowed from {self._state.value}: {[s.value for s in allowed]}. "
                f"Reason: {reason}"
            )
        self._apply(target, reason, source="core")

    def reflect(self, target: ConnectionState, reason: str = "") -> None:
        """Transport-reported state. Accepted as given."""
        if target == self._state:
            return
        self._apply(target, reason, source="transport")

    def reset(self) -> None:
        if self._state != ConnectionState.DISCONNECTED:
            self._apply(ConnectionState.DISCONNECTED, "reset", source="core")

    def _apply(self, target: ConnectionState, reason: str, source: str) -> None:
        prev = self._state
        now = time.time()
        self._history.append({
            "from": prev.value,
            "to": target.value,
            "reason": reason,
            "source": source,
            "timestamp": now,
            "duration_in_prev_ms": round((now - self._entered_at) * 1000, 1),
        })
        self._state = target
        self._entered_at = now

        logger.info(
            f"[{self.session_label}] CONNECTION: {prev.value} → {target.value}"
            + (f" ({reason})" if reason else "")
        )

        if self._on_transition:
            try:
                self._on_transition(prev, target, reason)
            except Exception as e:
                logger.error(f"Connection transition callback error: {e}")
