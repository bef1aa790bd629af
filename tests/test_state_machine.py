import pytest

from execution.tx_state_machine import InvalidTransition, TxLifecycle, TxState


def test_happy_path_records_history():
    lifecycle = TxLifecycle("stake")
    lifecycle.submitted("0xabc")
    lifecycle.transition(TxState.PENDING, "waiting")
    lifecycle.transition(TxState.CONFIRMED_SUCCESS, "block 7")

    assert lifecycle.is_terminal
    assert lifecycle.has_handle
    assert [new for _, new, _ in lifecycle.history] == [
        TxState.SUBMITTED,
        TxState.PENDING,
        TxState.CONFIRMED_SUCCESS,
    ]
    assert lifecycle.to_dict()["state"] == "CONFIRMED_SUCCESS"


def test_failed_only_before_a_handle_exists():
    lifecycle = TxLifecycle("stake")
    lifecycle.transition(TxState.FAILED, "user cancelled")
    assert lifecycle.is_terminal

    pending = TxLifecycle("stake")
    pending.submitted("0xabc")
    pending.transition(TxState.PENDING)
    with pytest.raises(InvalidTransition):
        pending.transition(TxState.FAILED)


@pytest.mark.parametrize("terminal", [
    TxState.CONFIRMED_SUCCESS,
    TxState.CONFIRMED_REVERTED,
    TxState.TIMED_OUT,
])
def test_terminal_states_are_final(terminal):
    lifecycle = TxLifecycle("stake")
    lifecycle.submitted("0xabc")
    lifecycle.transition(TxState.PENDING)
    lifecycle.transition(terminal)

    for target in TxState:
        with pytest.raises(InvalidTransition):
            lifecycle.transition(target)


def test_no_resubmission_state():
    lifecycle = TxLifecycle("stake")
    lifecycle.submitted("0xabc")

    with pytest.raises(InvalidTransition):
        lifecycle.submitted("0xdef")
