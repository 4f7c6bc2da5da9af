from __future__ import annotations

import asyncio
import copy
import datetime
import logging
import uuid
from typing import Callable, Iterable, Optional, Protocol, Union

from algorithms import MathTools
from errors import (
    ConflictError,
    EmptyWorkoutError,
    EngineError,
    ExerciseNotFoundError,
    InvalidIndexError,
    NoActiveSessionError,
    PersistenceError,
)
from events import EventBus, PERSONAL_RECORD, SESSION_CHANGED, SET_COMPLETED
from models import (
    INTEGER_SET_FIELDS,
    SET_FIELDS,
    CompletedExercise,
    CompletedSet,
    Exercise,
    ExerciseCompletionInfo,
    ExerciseSet,
    WorkoutCompletionStatus,
    WorkoutExercise,
    WorkoutSessionState,
    WorkoutSummary,
)
from rest_timer import RestTimer

logger = logging.getLogger(__name__)

HistoricalSets = dict[int, tuple[Optional[CompletedSet], Optional[CompletedSet]]]


class WorkoutPersistence(Protocol):
    async def persist_finished_workout(self, summary: WorkoutSummary) -> None: ...


class HistoricalDataSource(Protocol):
    async def fetch_previous_and_best(
        self, exercise_id: str, score_kind: str
    ) -> HistoricalSets: ...

    async def last_notes_for(self, exercise_id: str) -> Optional[str]: ...


class SessionSnapshotStore(Protocol):
    def save(self, state: WorkoutSessionState) -> None: ...

    def load(self) -> Optional[WorkoutSessionState]: ...

    def clear(self) -> None: ...


HISTORY_FIELDS = tuple(
    f"{kind}_{name}"
    for kind in ("previous", "best")
    for name in ("weight", "reps", "distance", "time")
)


def format_duration(seconds: float) -> str:
    """Format elapsed seconds as ``45s``, ``2m 5s`` or ``1h 0m 3s``."""
    seconds = int(seconds)
    if seconds >= 3600:
        return f"{seconds // 3600}h {(seconds % 3600) // 60}m {seconds % 60}s"
    if seconds >= 60:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds}s"


def workout_name_for(exercises: Iterable[WorkoutExercise]) -> str:
    """Name an unnamed workout after its first two muscle groups."""
    groups: list[str] = []
    for wex in exercises:
        group = wex.exercise.muscle_group
        if group and group not in groups:
            groups.append(group)
    if not groups:
        return "Quick Workout"
    if len(groups) == 1:
        return f"{groups[0].title()} Workout"
    return f"{groups[0].title()} & {groups[1].title()} Workout"


class WorkoutSessionService:
    """Owns the single in-progress workout.

    Every mutating operation is synchronous and applied in memory before any
    observer is notified. Only :meth:`finish_workout` and
    :meth:`load_history` talk to collaborators.
    """

    def __init__(
        self,
        persistence: WorkoutPersistence | None = None,
        snapshot_store: SessionSnapshotStore | None = None,
        bus: EventBus | None = None,
        rest_timer: RestTimer | None = None,
        *,
        clock: Callable[[], datetime.datetime] = datetime.datetime.now,
        finish_timeout: float | None = None,
        default_rest_seconds: int = 90,
    ) -> None:
        self.persistence = persistence
        self.snapshot_store = snapshot_store
        self.bus = bus or EventBus()
        self.rest_timer = rest_timer
        self.clock = clock
        self.finish_timeout = finish_timeout
        self.default_rest_seconds = default_rest_seconds
        self.rest_exercise_id: Optional[str] = None
        self._state: Optional[WorkoutSessionState] = None
        self._history: dict[str, HistoricalSets] = {}
        self._finishing = False
        if snapshot_store is not None:
            self.restore()

    @property
    def state(self) -> Optional[WorkoutSessionState]:
        """Copy of the current session, or None."""
        return copy.deepcopy(self._state)

    def has_active_workout(self) -> bool:
        return self._state is not None

    def is_paused(self) -> bool:
        return self._state is not None and self._state.paused_at is not None

    def routine_name(self) -> str:
        return self._state.routine_name if self._state else "Workout"

    def elapsed_seconds(self) -> float:
        state = self._require()
        end = state.paused_at or self.clock()
        elapsed = (end - state.start_time).total_seconds() - state.total_paused_seconds
        return max(0.0, elapsed)

    def duration_text(self) -> str:
        return format_duration(self.elapsed_seconds())

    def completion_status(self) -> WorkoutCompletionStatus:
        state = self._require()
        complete: list[ExerciseCompletionInfo] = []
        incomplete: list[ExerciseCompletionInfo] = []
        for wex in state.exercises:
            done = len(wex.completed_sets())
            total = len(wex.sets)
            if done == total and done > 0:
                complete.append(ExerciseCompletionInfo(wex.exercise.name, total, done, True))
            elif done < total:
                incomplete.append(ExerciseCompletionInfo(wex.exercise.name, total, done, False))
        total_sets = sum(len(wex.sets) for wex in state.exercises)
        completed_sets = state.count_completed_sets()
        return WorkoutCompletionStatus(
            total_exercises=len(state.exercises),
            completed_exercises=tuple(complete),
            incomplete_exercises=tuple(incomplete),
            total_sets=total_sets,
            completed_sets=completed_sets,
            is_fully_completed=not incomplete and completed_sets > 0,
        )

    def summary(self, end_time: datetime.datetime | None = None) -> WorkoutSummary:
        """Summarise completed sets: count, volume (weight x reps) and duration."""
        state = self._require()
        end = end_time or self.clock()
        done: list[CompletedExercise] = []
        total_sets = 0
        total_volume = 0.0
        for wex in state.exercises:
            completed = wex.completed_sets()
            if not completed:
                continue
            total_sets += len(completed)
            total_volume += MathTools.volume((s.reps, s.weight) for s in completed)
            done.append(
                CompletedExercise(
                    exercise_id=wex.exercise.id,
                    name=wex.exercise.name,
                    notes=wex.notes,
                    muscle_group=wex.exercise.muscle_group,
                    equipment=wex.exercise.equipment,
                    sets=tuple(
                        CompletedSet(s.set_number, s.weight, s.reps, s.distance, float(s.time))
                        for s in completed
                    ),
                )
            )
        return WorkoutSummary(
            id=str(uuid.uuid4()),
            name=state.routine_name or workout_name_for(state.exercises),
            routine_id=state.routine_id,
            start_time=state.start_time,
            end_time=end,
            duration_seconds=max(0.0, (end - state.start_time).total_seconds()),
            total_sets=total_sets,
            total_volume=round(total_volume, 2),
            exercises=tuple(done),
        )

    def start_workout(
        self,
        routine_id: Optional[str],
        routine_name: str,
        exercises: Iterable[Union[WorkoutExercise, Exercise]] = (),
    ) -> WorkoutSessionState:
        if self._state is not None:
            raise ConflictError(self.state)
        workout_exercises = [
            copy.deepcopy(e) if isinstance(e, WorkoutExercise) else WorkoutExercise.from_template(e)
            for e in exercises
        ]
        self._history.clear()
        self._state = WorkoutSessionState(
            routine_id=routine_id,
            routine_name=routine_name,
            exercises=workout_exercises,
            start_time=self.clock(),
            is_active=True,
            current_exercise=workout_exercises[0].exercise.name if workout_exercises else None,
        )
        self._state.completed_sets = self._state.count_completed_sets()
        logger.info("workout started: %s (%d exercises)", routine_name, len(workout_exercises))
        self._commit()
        return self.state

    def pause_workout(self) -> None:
        state = self._require()
        if state.paused_at is not None:
            return
        state.paused_at = self.clock()
        state.is_active = False
        self._commit()

    def resume_workout(self) -> None:
        state = self._require()
        if state.paused_at is None:
            return
        paused = (self.clock() - state.paused_at).total_seconds()
        state.total_paused_seconds += max(0.0, paused)
        state.paused_at = None
        state.is_active = True
        self._commit()

    def discard_workout(self) -> None:
        if self._state is None:
            return
        logger.info("workout discarded: %s", self._state.routine_name)
        self._clear()

    async def finish_workout(self) -> WorkoutSummary:
        """Persist the finished workout, then clear the session.

        On failure the session stays active and :class:`PersistenceError` is
        raised; nothing is retried.
        """
        state = self._require()
        if self._finishing:
            raise EngineError("workout is already being finished")
        summary = self.summary()
        if summary.total_sets == 0:
            raise EmptyWorkoutError()
        if self.persistence is None:
            raise PersistenceError(
                "no persistence collaborator configured", operation="persist_finished_workout"
            )
        self._finishing = True
        try:
            call = self.persistence.persist_finished_workout(summary)
            if self.finish_timeout is None:
                await call
            else:
                await asyncio.wait_for(call, self.finish_timeout)
        except Exception as exc:
            logger.warning("saving workout %s failed: %r", summary.name, exc)
            raise PersistenceError(
                f"failed to save workout: {exc!r}", operation="persist_finished_workout"
            ) from exc
        finally:
            self._finishing = False
        logger.info(
            "workout finished: %s, %d sets, volume %.1f",
            summary.name,
            summary.total_sets,
            summary.total_volume,
        )
        if self._state is state:
            self._clear()
        return summary

    def restore(self) -> Optional[WorkoutSessionState]:
        """Reload an interrupted session from the snapshot store."""
        if self.snapshot_store is None:
            return None
        try:
            state = self.snapshot_store.load()
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("discarding unreadable workout snapshot: %s", exc)
            self.snapshot_store.clear()
            return None
        if state is None:
            return None
        self._state = state
        logger.info("restored workout session: %s", state.routine_name)
        self.bus.publish(SESSION_CHANGED, self.state)
        return self.state

    def add_exercise(self, exercise: Exercise) -> None:
        state = self._require()
        if not exercise.is_valid():
            raise ValueError("exercise name must not be empty")
        if state.find_index(exercise.id) is not None:
            logger.debug("exercise %s already in workout", exercise.id)
            return
        wex = WorkoutExercise.from_template(exercise)
        for s in wex.sets:
            self._apply_cached_history(wex.exercise, s)
        state.exercises.append(wex)
        state.current_exercise = exercise.name
        self._mark_modified(state)
        self._commit()

    def replace_exercise(self, exercise_id: str, new_exercise: Exercise) -> None:
        """Swap the exercise definition, keeping logged sets, notes and flags.

        Previous and best values are those of the new exercise, if cached.
        """
        state, wex = self._locate(exercise_id)
        if new_exercise.id != exercise_id and state.find_index(new_exercise.id) is not None:
            raise ValueError(f"exercise already in workout: {new_exercise.id}")
        if state.current_exercise == wex.exercise.name:
            state.current_exercise = new_exercise.name
        wex.exercise = new_exercise
        for s in wex.sets:
            for name in HISTORY_FIELDS:
                setattr(s, name, None)
            self._apply_cached_history(new_exercise, s, prefill=False)
        self._mark_modified(state)
        self._commit()

    def remove_exercise(self, exercise_id: str) -> None:
        state, wex = self._locate(exercise_id)
        state.exercises.remove(wex)
        state.completed_sets = state.count_completed_sets()
        if state.current_exercise == wex.exercise.name:
            state.current_exercise = state.exercises[0].exercise.name if state.exercises else None
        self._mark_modified(state)
        self._commit()

    def reorder_exercises(self, from_index: int, to_index: int) -> None:
        state = self._require()
        try:
            self._check_index(from_index, len(state.exercises))
            self._check_index(to_index, len(state.exercises))
        except InvalidIndexError as exc:
            logger.debug("reorder ignored: %s", exc)
            return
        if from_index == to_index:
            return
        wex = state.exercises.pop(from_index)
        state.exercises.insert(to_index, wex)
        self._mark_modified(state)
        self._commit()

    def toggle_superset(self, exercise_id: str) -> bool:
        state, wex = self._locate(exercise_id)
        wex.is_superset = not wex.is_superset
        self._mark_modified(state)
        self._commit()
        return wex.is_superset

    def toggle_dropset(self, exercise_id: str) -> bool:
        state, wex = self._locate(exercise_id)
        wex.is_dropset = not wex.is_dropset
        self._mark_modified(state)
        self._commit()
        return wex.is_dropset

    def update_notes(self, exercise_id: str, notes: str) -> None:
        _state, wex = self._locate(exercise_id)
        wex.notes = notes
        self._commit()

    def update_current_exercise(self, name: str) -> None:
        state = self._require()
        state.current_exercise = name
        self._commit()

    def add_set(self, exercise_id: str) -> ExerciseSet:
        """Append a set pre-filled with the previous set's logged values."""
        _state, wex = self._locate(exercise_id)
        number = len(wex.sets) + 1
        if wex.sets:
            last = wex.sets[-1]
            new_set = ExerciseSet(
                set_number=number,
                weight=last.weight,
                reps=last.reps,
                distance=last.distance,
                time=last.time,
            )
        else:
            reps = 0 if wex.exercise.is_time_based_pure else wex.exercise.default_reps
            new_set = ExerciseSet(set_number=number, reps=reps)
        self._apply_cached_history(wex.exercise, new_set, prefill=False)
        wex.sets.append(new_set)
        self._commit()
        return copy.copy(new_set)

    def delete_set(self, exercise_id: str, set_number: int) -> None:
        """Remove a set and renumber the rest so numbering stays 1..N."""
        state, wex = self._locate(exercise_id)
        try:
            index = self._set_index(wex, set_number)
        except InvalidIndexError as exc:
            logger.debug("delete ignored: %s", exc)
            return
        del wex.sets[index]
        for number, s in enumerate(wex.sets, start=1):
            s.set_number = number
        state.completed_sets = state.count_completed_sets()
        self._commit()

    def update_set(self, exercise_id: str, set_number: int, field: str, value: float) -> None:
        if field not in SET_FIELDS:
            raise ValueError(f"unknown set field: {field}")
        _state, wex = self._locate(exercise_id)
        try:
            index = self._set_index(wex, set_number)
        except InvalidIndexError as exc:
            logger.debug("update ignored: %s", exc)
            return
        value = MathTools.non_negative(value)
        value = int(value) if field in INTEGER_SET_FIELDS else float(value)
        setattr(wex.sets[index], field, value)
        self._commit()

    def toggle_set_completion(
        self, exercise_id: str, set_number: int, completed: bool | None = None
    ) -> Optional[ExerciseSet]:
        """Mark a set done or not done.

        Completing a set publishes ``session.set_completed`` so the UI can move
        focus, and ``session.personal_record`` when it beats the historical best.
        """
        state, wex = self._locate(exercise_id)
        try:
            index = self._set_index(wex, set_number)
        except InvalidIndexError as exc:
            logger.debug("completion toggle ignored: %s", exc)
            return None
        target = wex.sets[index]
        target.is_completed = (not target.is_completed) if completed is None else completed
        state.completed_sets = state.count_completed_sets()
        if target.is_completed:
            state.current_exercise = wex.exercise.name
        self._commit()
        if target.is_completed:
            event = {"exercise_id": exercise_id, "set_number": set_number}
            self.bus.publish(SET_COMPLETED, event)
            if self._is_record(wex.exercise, target):
                self.bus.publish(PERSONAL_RECORD, dict(event, exercise=wex.exercise.name))
        return copy.copy(target)

    async def load_history(self, source: HistoricalDataSource) -> None:
        """Attach previous/best sets and last notes to every exercise."""
        state = self._require()
        for exercise in [wex.exercise for wex in state.exercises]:
            history = await source.fetch_previous_and_best(exercise.id, exercise.score_kind)
            notes = await source.last_notes_for(exercise.id)
            if self._state is not state:
                return
            self._history[exercise.id] = history
            index = state.find_index(exercise.id)
            if index is None:
                continue
            wex = state.exercises[index]
            for s in wex.sets:
                self._apply_cached_history(wex.exercise, s)
            if notes and not wex.notes:
                wex.notes = notes
        self._commit()

    def start_rest_timer(
        self, duration_seconds: int | None = None, exercise_id: str | None = None
    ) -> None:
        timer = self._timer()
        self.rest_exercise_id = exercise_id
        timer.start(self.default_rest_seconds if duration_seconds is None else duration_seconds)

    def stop_rest_timer(self) -> None:
        self._timer().stop()
        self.rest_exercise_id = None

    def pause_resume_rest_timer(self) -> None:
        self._timer().pause_resume()

    def _require(self) -> WorkoutSessionState:
        if self._state is None:
            raise NoActiveSessionError()
        return self._state

    def _locate(self, exercise_id: str) -> tuple[WorkoutSessionState, WorkoutExercise]:
        state = self._require()
        index = state.find_index(exercise_id)
        if index is None:
            raise ExerciseNotFoundError(exercise_id)
        return state, state.exercises[index]

    def _timer(self) -> RestTimer:
        if self.rest_timer is None:
            raise EngineError("no rest timer configured")
        return self.rest_timer

    @staticmethod
    def _check_index(index: int, count: int) -> None:
        if not 0 <= index < count:
            raise InvalidIndexError(f"index {index} outside [0, {count})")

    @staticmethod
    def _set_index(wex: WorkoutExercise, set_number: int) -> int:
        for index, s in enumerate(wex.sets):
            if s.set_number == set_number:
                return index
        raise InvalidIndexError(f"set {set_number} not found for {wex.exercise.id}")

    @staticmethod
    def _mark_modified(state: WorkoutSessionState) -> None:
        if state.routine_id is not None:
            state.is_routine_modified = True

    def _apply_cached_history(
        self, exercise: Exercise, target: ExerciseSet, prefill: bool = True
    ) -> None:
        history = self._history.get(exercise.id)
        if not history:
            return
        previous, best = history.get(target.set_number, (None, None))
        if previous is not None:
            target.previous_weight = previous.weight
            target.previous_reps = previous.reps
            target.previous_distance = previous.distance
            target.previous_time = int(previous.time)
            if prefill and not target.is_completed:
                if exercise.uses_weight and previous.weight > 0:
                    target.weight = previous.weight
                if not exercise.is_time_based and previous.reps > 0:
                    target.reps = previous.reps
                if exercise.tracks_distance and previous.distance > 0:
                    target.distance = previous.distance
                if exercise.is_time_based and previous.time > 0:
                    target.time = int(previous.time)
        if best is not None:
            target.best_weight = best.weight
            target.best_reps = best.reps
            target.best_distance = best.distance
            target.best_time = int(best.time)

    @staticmethod
    def _is_record(exercise: Exercise, target: ExerciseSet) -> bool:
        kind = exercise.score_kind
        score = MathTools.set_score(
            kind, target.weight, target.reps, target.distance, target.time
        )
        best = MathTools.best_score(
            kind, target.best_weight, target.best_reps, target.best_distance, target.best_time
        )
        return MathTools.is_personal_record(score, best)

    def _commit(self) -> None:
        if self.snapshot_store is not None and self._state is not None:
            try:
                self.snapshot_store.save(self._state)
            except Exception:
                # snapshots are best effort; the in-memory state stays authoritative
                logger.exception("saving workout snapshot failed")
        self.bus.publish(SESSION_CHANGED, self.state)

    def _clear(self) -> None:
        self._state = None
        self._history.clear()
        if self.rest_timer is not None:
            self.rest_timer.stop()
        self.rest_exercise_id = None
        if self.snapshot_store is not None:
            self.snapshot_store.clear()
        self.bus.publish(SESSION_CHANGED, None)
