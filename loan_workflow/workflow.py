"""
Workflow State Machine Module

The loan approval pipeline: a closed set of stages, the directed edges
between them, per-stage history with timing, and an orthogonal "blocked"
flag. Blocking never changes the stage and never prevents advancing;
advancing clears it.
"""

from datetime import datetime
from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, List, Optional, Tuple, Any
from enum import Enum

from .errors import InvalidTransitionError, WorkflowTerminalError


class WorkflowStage(Enum):
    """Loan lifecycle stages"""
    APPLICATION_SUBMITTED = "application_submitted"
    DOCUMENTS_PENDING = "documents_pending"
    AGENT_REVIEW = "agent_review"
    REGIONAL_APPROVAL = "regional_approval"
    AGREEMENT_GENERATION = "agreement_generation"
    AGREEMENT_SIGNED = "agreement_signed"
    DISBURSEMENT = "disbursement"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES


TERMINAL_STAGES: FrozenSet[WorkflowStage] = frozenset({
    WorkflowStage.COMPLETED,
    WorkflowStage.DEFAULTED,
    WorkflowStage.CLOSED,
})

TRANSITIONS: Dict[WorkflowStage, FrozenSet[WorkflowStage]] = {
    WorkflowStage.APPLICATION_SUBMITTED: frozenset({WorkflowStage.DOCUMENTS_PENDING}),
    WorkflowStage.DOCUMENTS_PENDING: frozenset({WorkflowStage.AGENT_REVIEW}),
    WorkflowStage.AGENT_REVIEW: frozenset({WorkflowStage.REGIONAL_APPROVAL}),
    WorkflowStage.REGIONAL_APPROVAL: frozenset({WorkflowStage.AGREEMENT_GENERATION}),
    WorkflowStage.AGREEMENT_GENERATION: frozenset({WorkflowStage.AGREEMENT_SIGNED}),
    WorkflowStage.AGREEMENT_SIGNED: frozenset({WorkflowStage.DISBURSEMENT}),
    WorkflowStage.DISBURSEMENT: frozenset({WorkflowStage.ACTIVE}),
    WorkflowStage.ACTIVE: frozenset({
        WorkflowStage.COMPLETED,
        WorkflowStage.DEFAULTED,
        WorkflowStage.CLOSED,
    }),
    WorkflowStage.COMPLETED: frozenset(),
    WorkflowStage.DEFAULTED: frozenset(),
    WorkflowStage.CLOSED: frozenset(),
}

INITIAL_STAGE = WorkflowStage.APPLICATION_SUBMITTED

PIPELINE: Tuple[WorkflowStage, ...] = (
    WorkflowStage.APPLICATION_SUBMITTED,
    WorkflowStage.DOCUMENTS_PENDING,
    WorkflowStage.AGENT_REVIEW,
    WorkflowStage.REGIONAL_APPROVAL,
    WorkflowStage.AGREEMENT_GENERATION,
    WorkflowStage.AGREEMENT_SIGNED,
    WorkflowStage.DISBURSEMENT,
    WorkflowStage.ACTIVE,
)


def stage_position(stage: WorkflowStage) -> int:
    """Position along the pipeline; terminal stages sort after active"""
    if stage in PIPELINE:
        return PIPELINE.index(stage)
    return len(PIPELINE)


def coerce_stage(stage: Any) -> WorkflowStage:
    """Accept a WorkflowStage or its string value"""
    if isinstance(stage, WorkflowStage):
        return stage
    try:
        return WorkflowStage(stage)
    except ValueError:
        raise InvalidTransitionError("unknown", str(stage))


@dataclass(frozen=True)
class StageHistoryEntry:
    """One visit to a stage. Open while completed_at is None."""
    stage: WorkflowStage
    entered_at: datetime
    actor: str
    notes: str = ""
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.completed_at is None

    def close(self, at: datetime) -> 'StageHistoryEntry':
        return replace(
            self,
            completed_at=at,
            duration_seconds=max((at - self.entered_at).total_seconds(), 0.0)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'stage': self.stage.value,
            'entered_at': self.entered_at.isoformat(),
            'actor': self.actor,
            'notes': self.notes,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'duration_seconds': self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StageHistoryEntry':
        return cls(
            stage=WorkflowStage(data['stage']),
            entered_at=datetime.fromisoformat(data['entered_at']),
            actor=data['actor'],
            notes=data.get('notes', ''),
            completed_at=datetime.fromisoformat(data['completed_at']) if data.get('completed_at') else None,
            duration_seconds=data.get('duration_seconds'),
        )


@dataclass
class WorkflowState:
    """Current stage, its history and the block flag for one loan"""
    current_stage: WorkflowStage = INITIAL_STAGE
    stage_history: List[StageHistoryEntry] = field(default_factory=list)
    is_blocked: bool = False
    blocked_reason: Optional[str] = None
    blocked_by: Optional[str] = None
    blocked_at: Optional[datetime] = None

    @classmethod
    def start(cls, actor: str, at: datetime, notes: str = "Application submitted") -> 'WorkflowState':
        """New workflow with the initial stage entered"""
        state = cls(current_stage=INITIAL_STAGE)
        state.stage_history.append(StageHistoryEntry(
            stage=INITIAL_STAGE,
            entered_at=at,
            actor=actor,
            notes=notes
        ))
        return state

    @property
    def is_terminal(self) -> bool:
        return self.current_stage.is_terminal

    def allowed_transitions(self) -> FrozenSet[WorkflowStage]:
        return TRANSITIONS[self.current_stage]

    def can_advance_to(self, new_stage: WorkflowStage) -> bool:
        return new_stage in TRANSITIONS[self.current_stage]

    def open_entries(self) -> List[StageHistoryEntry]:
        return [entry for entry in self.stage_history if entry.is_open]

    @property
    def current_entry(self) -> Optional[StageHistoryEntry]:
        open_entries = self.open_entries()
        return open_entries[-1] if open_entries else None

    def check_advance(self, new_stage: WorkflowStage) -> None:
        """
        Validate a transition without applying it

        Raises:
            WorkflowTerminalError: If the current stage is terminal
            InvalidTransitionError: If new_stage is not a direct successor
        """
        if self.is_terminal:
            raise WorkflowTerminalError(self.current_stage.value)
        if not self.can_advance_to(new_stage):
            raise InvalidTransitionError(self.current_stage.value, new_stage.value)

    def advance(self, new_stage: WorkflowStage, actor: str, at: datetime,
                notes: str = "") -> StageHistoryEntry:
        """
        Move to a direct successor stage

        Closes the open history entry, opens one for the new stage (closed
        on entry when the new stage is terminal) and clears any block.

        Returns:
            The history entry for the new stage
        """
        new_stage = coerce_stage(new_stage)
        self.check_advance(new_stage)

        for index, entry in enumerate(self.stage_history):
            if entry.is_open:
                self.stage_history[index] = entry.close(at)

        new_entry = StageHistoryEntry(
            stage=new_stage,
            entered_at=at,
            actor=actor,
            notes=notes
        )
        if new_stage.is_terminal:
            new_entry = new_entry.close(at)
        self.stage_history.append(new_entry)

        self.current_stage = new_stage
        self.clear_block()
        return new_entry

    def block(self, reason: str, actor: str, at: datetime) -> None:
        """Flag the workflow; stage and allowed transitions are unchanged"""
        if self.is_terminal:
            raise WorkflowTerminalError(self.current_stage.value)
        self.is_blocked = True
        self.blocked_reason = reason
        self.blocked_by = actor
        self.blocked_at = at

    def unblock(self) -> None:
        if self.is_terminal:
            raise WorkflowTerminalError(self.current_stage.value)
        self.clear_block()

    def clear_block(self) -> None:
        self.is_blocked = False
        self.blocked_reason = None
        self.blocked_by = None
        self.blocked_at = None

    # Analytics only: never consulted when validating transitions

    def time_in_stage(self, stage: WorkflowStage) -> float:
        """Total seconds spent in a stage across completed visits"""
        return sum(
            entry.duration_seconds or 0.0
            for entry in self.stage_history
            if entry.stage == stage and not entry.is_open
        )

    def current_stage_age(self, now: datetime) -> float:
        entry = self.current_entry
        if entry is None:
            return 0.0
        return max((now - entry.entered_at).total_seconds(), 0.0)

    def stage_timeline(self) -> List[Tuple[str, Optional[float]]]:
        return [(entry.stage.value, entry.duration_seconds) for entry in self.stage_history]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'current_stage': self.current_stage.value,
            'stage_history': [entry.to_dict() for entry in self.stage_history],
            'is_blocked': self.is_blocked,
            'blocked_reason': self.blocked_reason,
            'blocked_by': self.blocked_by,
            'blocked_at': self.blocked_at.isoformat() if self.blocked_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowState':
        return cls(
            current_stage=WorkflowStage(data['current_stage']),
            stage_history=[StageHistoryEntry.from_dict(e) for e in data.get('stage_history', [])],
            is_blocked=data.get('is_blocked', False),
            blocked_reason=data.get('blocked_reason'),
            blocked_by=data.get('blocked_by'),
            blocked_at=datetime.fromisoformat(data['blocked_at']) if data.get('blocked_at') else None,
        )
