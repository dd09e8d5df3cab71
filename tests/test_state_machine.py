import pytest

from haven.core.state_machine import ConnectionState, ConnectionStateMachine


def test_core_transitions_are_validated():
    seen = []
    sm = ConnectionStateMachine(on_transition=lambda prev, new, reason: seen.append((prev, new, reason)))

    sm.transition(ConnectionState.CONNECTING, "bootstrap")
    sm.transition(ConnectionState.CONNECTED, "negotiated")

    with pytest.raises(ValueError):
        sm.transition(ConnectionState.CONNECTING)

    assert sm.state == ConnectionState.CONNECTED
    assert seen == [
        (ConnectionState.DISCONNECTED, ConnectionState.CONNECTING, "bootstrap"),
        (ConnectionState.CONNECTING, ConnectionState.CONNECTED, "negotiated"),
    ]


def test_reconnecting_is_only_reflected():
    sm = ConnectionStateMachine()
    sm.transition(ConnectionState.CONNECTING)
    sm.transition(ConnectionState.CONNECTED)

    with pytest.raises(ValueError):
        sm.transition(ConnectionState.RECONNECTING)

    sm.reflect(ConnectionState.RECONNECTING, "ice restart")
    assert sm.state == ConnectionState.RECONNECTING
    assert sm.history[-1]["source"] == "transport"


def test_reset_and_history():
    sm = ConnectionStateMachine()
    sm.reset()
    assert sm.history == []

    sm.transition(ConnectionState.CONNECTING)
    sm.transition(ConnectionState.CONNECTING)  # same state, ignored
    sm.reset()

    assert sm.state == ConnectionState.DISCONNECTED
    assert [h["to"] for h in sm.history] == ["connecting", "disconnected"]


def test_failing_listener_does_not_block_transition():
    def boom(prev, new, reason):
        raise RuntimeError("listener crashed")

    sm = ConnectionStateMachine(on_transition=boom)
    sm.transition(ConnectionState.CONNECTING)
    assert sm.state == ConnectionState.CONNECTING


def test_coerce_unknown_state():
    assert ConnectionState.coerce("connected") == ConnectionState.CONNECTED
    assert ConnectionState.coerce("sideways") == ConnectionState.DISCONNECTED
