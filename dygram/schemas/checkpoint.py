"""
Checkpoint Schema - execution state snapshots for restore-from-step.

A checkpoint captures the complete ExecutionState between steps so a run
can be rewound (e.g. after a bad machine update) or resumed elsewhere.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from dygram.schemas.execution import ExecutionState


class Checkpoint(BaseModel):
    """Single checkpoint in a run's timeline."""

    # Identity
    checkpoint_id: str  # Format: cp_{step}_{timestamp}
    run_id: str

    # Timestamps
    created_at: str  # ISO 8601 format

    step_count: int = 0
    active_nodes: list[str] = Field(default_factory=list)
    state: ExecutionState

    description: str = ""

    model_config = {"extra": "allow"}

    @classmethod
    def create(cls, state: ExecutionState, description: str = "") -> "Checkpoint":
        """
        Create a checkpoint holding a deep copy of the state.

        Args:
            state: State to capture
            description: Human-readable description

        Returns:
            New Checkpoint instance
        """
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        return cls(
            checkpoint_id=f"cp_{state.step_count}_{timestamp}",
            run_id=state.run_id,
            created_at=datetime.now().isoformat(),
            step_count=state.step_count,
            active_nodes=[p.current_node for p in state.active_paths()],
            state=state.model_copy(deep=True),
            description=description,
        )
