# state.py
# Per-job state machine. The runner drives it; nothing else mutates job state.
from __future__ import annotations

from typing import Any, Dict, List

from transitions import MachineError
from transitions.extensions import LockedMachine

from .errors import InvalidTransition
from .model import JobKind, JobState, LIFECYCLES, STAGE_STATES

S = JobState

STATES: List[str] = [s.value for s in JobState]


def trigger_for(target: JobState) -> str:
    """Name of the event that moves a job into `target`."""
    return f"to_{target.value}"


def _lifecycle_transitions(kind: JobKind) -> List[Dict[str, Any]]:
    """
    pending -> <stage 1> -> ... -> <stage n> -> succeeded
    with a jump to failed from pending or any running state.
    """
    running = [STAGE_STATES[stage].value for stage in LIFECYCLES[kind]]
    table: List[Dict[str, Any]] = [
        # pending can end without running: gate refused, needs failed, or cancelled
        {"trigger": trigger_for(S.NOT_ELIGIBLE), "source": S.PENDING.value, "dest": S.NOT_ELIGIBLE.value},
        {"trigger": trigger_for(S.SKIPPED), "source": S.PENDING.value, "dest": S.SKIPPED.value},
        {"trigger": trigger_for(S.CANCELLED), "source": S.PENDING.value, "dest": S.CANCELLED.value},
        {"trigger": trigger_for(S.FAILED), "source": [S.PENDING.value, *running], "dest": S.FAILED.value},
    ]
    for current, nxt in zip([S.PENDING.value, *running], [*running, S.SUCCEEDED.value]):
        table.append({"trigger": trigger_for(JobState(nxt)), "source": current, "dest": nxt})
    return table


TRANSITIONS: Dict[JobKind, List[Dict[str, Any]]] = {
    kind: _lifecycle_transitions(kind) for kind in JobKind
}


class JobStateMachine:
    """Tracks one job's state and the path it took."""

    def __init__(self, job: str, kind: JobKind):
        self.job = job
        self.kind = kind
        self._history: List[JobState] = [S.PENDING]
        # matrix jobs finish on worker threads
        self.machine = LockedMachine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS[kind],
            initial=S.PENDING.value,
            model_attribute="status",
            auto_transitions=False,
            after_state_change="_record",
        )

    @property
    def state(self) -> JobState:
        return JobState(self.status)

    @property
    def history(self) -> List[JobState]:
        return list(self._history)

    def _record(self) -> None:
        self._history.append(self.state)

    def can(self, target: JobState) -> bool:
        return trigger_for(target) in self.machine.get_triggers(self.status)

    def transition(self, target: JobState) -> JobState:
        current = self.state
        if trigger_for(target) not in self.machine.events:
            raise InvalidTransition(self.job, current, target)
        try:
            self.trigger(trigger_for(target))
        except MachineError:
            raise InvalidTransition(self.job, current, target) from None
        return self.state
