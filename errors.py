class EngineError(Exception):
    """Base class for errors raised by the workout engine."""


class ConflictError(EngineError):
    """A workout was started while another session is still active."""

    def __init__(self, current) -> None:
        super().__init__(f"workout '{current.routine_name}' is already active")
        self.current = current


class PersistenceError(EngineError):
    """A persistence collaborator call failed or timed out."""

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation


class InvalidIndexError(EngineError, IndexError):
    """An exercise or set position is outside the valid range."""


class NoActiveSessionError(EngineError, RuntimeError):
    """A session operation was invoked while no workout is active."""

    def __init__(self) -> None:
        super().__init__("no active workout")


class ExerciseNotFoundError(EngineError, ValueError):
    def __init__(self, exercise_id: str) -> None:
        super().__init__(f"exercise not found: {exercise_id}")
        self.exercise_id = exercise_id


class CounterNotFoundError(EngineError, ValueError):
    def __init__(self, counter_id: str) -> None:
        super().__init__(f"counter not found: {counter_id}")
        self.counter_id = counter_id


class EmptyWorkoutError(EngineError, ValueError):
    """Finishing was requested before any set was completed."""

    def __init__(self) -> None:
        super().__init__(
            "no completed sets found; complete at least one set to finish the workout"
        )
