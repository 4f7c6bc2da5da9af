from __future__ import annotations

import datetime
import re
import time
import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Optional

SET_FIELDS = ("weight", "reps", "distance", "time")
INTEGER_SET_FIELDS = {"reps", "time"}


def slug_id(name: str) -> str:
    """Derive a stable identifier from an exercise name."""
    slug = name.strip().lower().replace(" ", "_")
    return re.sub(r"[^a-z0-9_]", "", slug)


def day_string(day: datetime.date | None = None) -> str:
    """Return ``day`` (default today) as ``yyyy-MM-dd``."""
    return (day or datetime.date.today()).isoformat()


def now_ms() -> int:
    return int(time.time() * 1000)


def to_dict(obj) -> dict:
    """Convert a model dataclass into JSON compatible primitives."""
    return _jsonable(asdict(obj))


def _jsonable(value):
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (datetime.datetime, datetime.date)):
        return value.isoformat()
    return value


def _known(cls, data: dict) -> dict:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


def _parse_time(value) -> Optional[datetime.datetime]:
    if value is None or isinstance(value, datetime.datetime):
        return value
    return datetime.datetime.fromisoformat(value)


@dataclass(frozen=True)
class Exercise:
    """Static exercise definition referenced by a workout."""

    name: str
    id: str = ""
    muscle_group: str = ""
    primary_muscles: tuple[str, ...] = ()
    equipment: str = ""
    default_reps: int = 15
    default_sets: int = 1
    is_bodyweight: bool = False
    uses_weight: bool = True
    tracks_distance: bool = False
    is_time_based: bool = False
    description: str = ""
    is_superset: bool = False
    is_dropset: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "primary_muscles", tuple(self.primary_muscles))
        if not self.id:
            object.__setattr__(self, "id", slug_id(self.name))
        if not self.muscle_group and self.primary_muscles:
            object.__setattr__(self, "muscle_group", self.primary_muscles[0])

    def is_valid(self) -> bool:
        return bool(self.name.strip())

    @property
    def is_time_based_pure(self) -> bool:
        return self.is_time_based and not self.uses_weight and not self.tracks_distance

    @property
    def score_kind(self) -> str:
        """Metric used to rank sets of this exercise for personal records."""
        if self.is_time_based_pure:
            return "time"
        if self.tracks_distance:
            return "distance"
        if self.uses_weight and not self.is_bodyweight:
            return "weight"
        return "reps"

    @classmethod
    def from_dict(cls, data: dict) -> "Exercise":
        return cls(**_known(cls, data))


@dataclass
class ExerciseSet:
    """One planned or performed set; ``previous_*``/``best_*`` are read-only history."""

    set_number: int
    weight: float = 0.0
    reps: int = 0
    distance: float = 0.0
    time: int = 0
    is_completed: bool = False
    previous_weight: Optional[float] = None
    previous_reps: Optional[int] = None
    previous_distance: Optional[float] = None
    previous_time: Optional[int] = None
    best_weight: Optional[float] = None
    best_reps: Optional[int] = None
    best_distance: Optional[float] = None
    best_time: Optional[int] = None

    def has_previous(self) -> bool:
        return (
            (self.previous_weight is not None and self.previous_reps is not None)
            or self.previous_distance is not None
            or self.previous_time is not None
        )

    @classmethod
    def from_dict(cls, data: dict) -> "ExerciseSet":
        return cls(**_known(cls, data))


@dataclass
class WorkoutExercise:
    """An exercise instance inside the active workout."""

    exercise: Exercise
    sets: list[ExerciseSet] = field(default_factory=list)
    notes: str = ""
    is_superset: bool = False
    is_dropset: bool = False

    @classmethod
    def from_template(cls, exercise: Exercise) -> "WorkoutExercise":
        reps = 0 if exercise.is_time_based_pure else exercise.default_reps
        sets = [
            ExerciseSet(set_number=i + 1, reps=reps)
            for i in range(max(1, exercise.default_sets))
        ]
        return cls(
            exercise=exercise,
            sets=sets,
            is_superset=exercise.is_superset,
            is_dropset=exercise.is_dropset,
        )

    def completed_sets(self) -> list[ExerciseSet]:
        return [s for s in self.sets if s.is_completed]

    def find_set(self, set_number: int) -> Optional[ExerciseSet]:
        for s in self.sets:
            if s.set_number == set_number:
                return s
        return None

    @classmethod
    def from_dict(cls, data: dict) -> "WorkoutExercise":
        return cls(
            exercise=Exercise.from_dict(data["exercise"]),
            sets=[ExerciseSet.from_dict(s) for s in data.get("sets", [])],
            notes=data.get("notes", ""),
            is_superset=bool(data.get("is_superset", False)),
            is_dropset=bool(data.get("is_dropset", False)),
        )


@dataclass
class WorkoutSessionState:
    """The single in-progress workout."""

    routine_id: Optional[str]
    routine_name: str
    exercises: list[WorkoutExercise] = field(default_factory=list)
    start_time: datetime.datetime = field(default_factory=datetime.datetime.now)
    is_active: bool = True
    current_exercise: Optional[str] = None
    completed_sets: int = 0
    paused_at: Optional[datetime.datetime] = None
    total_paused_seconds: float = 0.0
    is_routine_modified: bool = False

    def find_index(self, exercise_id: str) -> Optional[int]:
        for idx, wex in enumerate(self.exercises):
            if wex.exercise.id == exercise_id:
                return idx
        return None

    def count_completed_sets(self) -> int:
        return sum(len(wex.completed_sets()) for wex in self.exercises)

    def to_dict(self) -> dict:
        return to_dict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "WorkoutSessionState":
        return cls(
            routine_id=data.get("routine_id"),
            routine_name=data.get("routine_name", ""),
            exercises=[WorkoutExercise.from_dict(e) for e in data.get("exercises", [])],
            start_time=_parse_time(data["start_time"]),
            is_active=bool(data.get("is_active", True)),
            current_exercise=data.get("current_exercise"),
            completed_sets=int(data.get("completed_sets", 0)),
            paused_at=_parse_time(data.get("paused_at")),
            total_paused_seconds=float(data.get("total_paused_seconds", 0.0)),
            is_routine_modified=bool(data.get("is_routine_modified", False)),
        )


@dataclass(frozen=True)
class CompletedSet:
    set_number: int
    weight: float = 0.0
    reps: int = 0
    distance: float = 0.0
    time: float = 0.0


@dataclass(frozen=True)
class CompletedExercise:
    exercise_id: str
    name: str
    notes: str = ""
    muscle_group: str = ""
    equipment: str = ""
    sets: tuple[CompletedSet, ...] = ()


@dataclass(frozen=True)
class WorkoutSummary:
    """Finished-workout record handed to the persistence collaborator."""

    id: str
    name: str
    routine_id: Optional[str]
    start_time: datetime.datetime
    end_time: datetime.datetime
    duration_seconds: float
    total_sets: int
    total_volume: float
    exercises: tuple[CompletedExercise, ...] = ()

    @property
    def exercise_ids(self) -> list[str]:
        return [e.exercise_id for e in self.exercises]

    @property
    def exercise_count(self) -> int:
        return len(self.exercises)

    def to_dict(self) -> dict:
        data = to_dict(self)
        data["exercise_ids"] = self.exercise_ids
        return data


@dataclass(frozen=True)
class ExerciseCompletionInfo:
    exercise_name: str
    total_sets: int
    completed_sets: int
    is_fully_completed: bool


@dataclass(frozen=True)
class WorkoutCompletionStatus:
    total_exercises: int
    completed_exercises: tuple[ExerciseCompletionInfo, ...]
    incomplete_exercises: tuple[ExerciseCompletionInfo, ...]
    total_sets: int
    completed_sets: int
    is_fully_completed: bool


@dataclass(frozen=True)
class Counter:
    """User-defined tally with an all-time and a daily total."""

    name: str
    user_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    current_count: int = 0
    today_count: int = 0
    created_at: int = field(default_factory=now_ms)
    last_reset_date: str = field(default_factory=day_string)

    def reset_for(self, day: str) -> "Counter":
        """Return the counter as seen on ``day``; the daily total restarts on a new day."""
        if self.last_reset_date == day:
            return self
        return replace(self, today_count=0, last_reset_date=day)

    def with_delta(self, delta: int, day: str) -> "Counter":
        current = self.reset_for(day)
        return replace(
            current,
            today_count=max(0, current.today_count + delta),
            current_count=max(0, current.current_count + delta),
        )

    @classmethod
    def from_dict(cls, data: dict) -> "Counter":
        return cls(**_known(cls, data))


@dataclass(frozen=True)
class CounterEntry:
    counter_id: str
    count: int
    date: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class CounterStats:
    yesterday: int = 0
    today: int = 0
    this_week: int = 0
    this_month: int = 0
    this_year: int = 0
    all_time: int = 0

    def adjusted(self, change: int) -> "CounterStats":
        return CounterStats(
            yesterday=self.yesterday,
            today=max(0, self.today + change),
            this_week=max(0, self.this_week + change),
            this_month=max(0, self.this_month + change),
            this_year=max(0, self.this_year + change),
            all_time=max(0, self.all_time + change),
        )
