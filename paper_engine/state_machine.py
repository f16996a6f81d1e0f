"""
Paper Engine – Session state machine.

    idle --start--> running --pause--> holding --resume--> running
    idle/running/holding --stop--> stopped          (terminal until reset)
    any --close_all--> idle                         (clears pending requests)
    any --halt--> idle + halted                     (blocks start/resume)
    any --reset--> idle, halt cleared               (external day reset)

Transitions return a new SessionState; the caller persists it.
"""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Optional

from paper_engine.clocks import trading_day
from paper_engine.config_types import SessionState, SessionStatus
from paper_engine.errors import SessionTransitionError


class SessionAction(str, Enum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    CLOSE_ALL = "close_all"
    HALT = "halt"
    RESET = "reset"


_ALLOWED_FROM: dict[SessionAction, frozenset[SessionStatus]] = {
    SessionAction.START: frozenset({SessionStatus.IDLE}),
    SessionAction.PAUSE: frozenset({SessionStatus.RUNNING}),
    SessionAction.RESUME: frozenset({SessionStatus.HOLDING}),
    SessionAction.STOP: frozenset({SessionStatus.IDLE, SessionStatus.RUNNING, SessionStatus.HOLDING}),
}

_RESULT: dict[SessionAction, SessionStatus] = {
    SessionAction.START: SessionStatus.RUNNING,
    SessionAction.PAUSE: SessionStatus.HOLDING,
    SessionAction.RESUME: SessionStatus.RUNNING,
    SessionAction.STOP: SessionStatus.STOPPED,
}


def entries_allowed(state: SessionState) -> bool:
    return state.status == SessionStatus.RUNNING and not state.halted


def transition(
    state: SessionState,
    action: SessionAction,
    *,
    now: Optional[datetime] = None,
) -> SessionState:
    action = SessionAction(action)

    if action == SessionAction.RESET:
        return SessionState()

    if action == SessionAction.HALT:
        return replace(
            state,
            status=SessionStatus.IDLE,
            halted=True,
            halted_date=trading_day(now) if now is not None else state.halted_date,
            burst_requested=False,
        )

    if action == SessionAction.CLOSE_ALL:
        return replace(
            state,
            status=SessionStatus.IDLE,
            close_all_requested=False,
            burst_requested=False,
        )

    if action in (SessionAction.START, SessionAction.RESUME) and state.halted:
        raise SessionTransitionError(
            f"cannot {action.value}: trading halted for the day ({state.halted_date or 'unknown date'})"
        )

    if state.status not in _ALLOWED_FROM[action]:
        raise SessionTransitionError(f"cannot {action.value} from {state.status.value}")

    return replace(state, status=_RESULT[action])
