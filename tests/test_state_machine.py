from voice_relay.state_machine import SessionPhase, StateTransition


def test_steady_state_cycle_is_allowed():
    path = [
        SessionPhase.IDLE,
        SessionPhase.CONNECTING,
        SessionPhase.CONFIGURING,
        SessionPhase.LISTENING,
        SessionPhase.MODEL_SPEAKING,
        SessionPhase.EXECUTING_TOOL,
        SessionPhase.LISTENING,
    ]
    for current, following in zip(path, path[1:]):
        assert StateTransition.is_valid_transition(current, following)


def test_disconnected_reachable_from_every_state():
    for phase in SessionPhase:
        if phase is SessionPhase.DISCONNECTED:
            continue
        assert StateTransition.is_valid_transition(phase, SessionPhase.DISCONNECTED)


def test_cannot_skip_configuration():
    assert not StateTransition.is_valid_transition(SessionPhase.IDLE, SessionPhase.LISTENING)
    assert not StateTransition.is_valid_transition(SessionPhase.CONNECTING, SessionPhase.MODEL_SPEAKING)
