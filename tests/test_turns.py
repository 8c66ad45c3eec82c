"""Turn state machine tests."""
import itertools

import pytest

from voice_session.turns import TurnState, TurnStateMachine, TurnTrigger, next_state


def _machine_at(*triggers):
    machine = TurnStateMachine()
    for trigger in triggers:
        machine.fire(trigger)
    return machine


def test_starts_idle():
    machine = TurnStateMachine()
    assert machine.state is TurnState.IDLE
    assert machine.turn_seq == 0
    assert not machine.response_in_flight


def test_full_turn_cycle():
    machine = TurnStateMachine()

    assert machine.fire(TurnTrigger.CONNECTED) == (TurnState.IDLE, TurnState.LISTENING)
    assert machine.fire(TurnTrigger.BUFFER_COMMITTED) == (TurnState.LISTENING, TurnState.THINKING)
    assert machine.turn_seq == 1
    assert machine.response_in_flight
    assert machine.fire(TurnTrigger.ASSISTANT_OUTPUT) == (TurnState.THINKING, TurnState.SPEAKING)
    assert machine.fire(TurnTrigger.RESPONSE_DONE) == (TurnState.SPEAKING, TurnState.LISTENING)
    assert machine.state is TurnState.LISTENING


def test_response_done_from_thinking():
    machine = _machine_at(TurnTrigger.CONNECTED, TurnTrigger.BUFFER_COMMITTED)
    assert machine.fire(TurnTrigger.RESPONSE_DONE) == (TurnState.THINKING, TurnState.LISTENING)


@pytest.mark.parametrize("state_triggers", [
    (TurnTrigger.CONNECTED, TurnTrigger.BUFFER_COMMITTED),
    (TurnTrigger.CONNECTED, TurnTrigger.BUFFER_COMMITTED, TurnTrigger.ASSISTANT_OUTPUT),
])
def test_abort_returns_to_listening(state_triggers):
    machine = _machine_at(*state_triggers)
    machine.fire(TurnTrigger.RESPONSE_ABORTED)
    assert machine.state is TurnState.LISTENING


def test_speaking_ignores_buffer_commit():
    machine = _machine_at(TurnTrigger.CONNECTED, TurnTrigger.BUFFER_COMMITTED, TurnTrigger.ASSISTANT_OUTPUT)
    assert machine.fire(TurnTrigger.BUFFER_COMMITTED) is None
    assert machine.state is TurnState.SPEAKING
    assert machine.turn_seq == 1


def test_idle_ignores_everything_but_connect():
    machine = TurnStateMachine()
    for trigger in TurnTrigger:
        if trigger is TurnTrigger.CONNECTED:
            continue
        assert machine.fire(trigger) is None
    assert machine.state is TurnState.IDLE


def test_disconnect_from_any_connected_state():
    for triggers in [
        (TurnTrigger.CONNECTED,),
        (TurnTrigger.CONNECTED, TurnTrigger.BUFFER_COMMITTED),
        (TurnTrigger.CONNECTED, TurnTrigger.BUFFER_COMMITTED, TurnTrigger.ASSISTANT_OUTPUT),
    ]:
        machine = _machine_at(*triggers)
        machine.fire(TurnTrigger.DISCONNECTED)
        assert machine.state is TurnState.IDLE


def test_no_sequence_reaches_undefined_state():
    for sequence in itertools.product(list(TurnTrigger), repeat=4):
        machine = _machine_at(*sequence)
        assert machine.state in set(TurnState)


def test_next_state_table():
    assert next_state(TurnState.LISTENING, TurnTrigger.ASSISTANT_OUTPUT) is None
    assert next_state(TurnState.SPEAKING, TurnTrigger.ASSISTANT_OUTPUT) is None
    assert next_state(TurnState.THINKING, TurnTrigger.ASSISTANT_OUTPUT) is TurnState.SPEAKING
