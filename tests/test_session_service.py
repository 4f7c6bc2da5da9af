import os
import sys
import asyncio
import datetime
import unittest
import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from errors import (
    ConflictError,
    EmptyWorkoutError,
    ExerciseNotFoundError,
    NoActiveSessionError,
    PersistenceError,
)
from events import EventBus, PERSONAL_RECORD, SESSION_CHANGED, SET_COMPLETED
from models import CompletedSet, Exercise, WorkoutExercise
from rest_timer import Active, Inactive, RestTimer
from session_service import WorkoutSessionService, format_duration, workout_name_for


BENCH = Exercise("Bench Press", muscle_group="chest", equipment="Barbell")
SQUAT = Exercise("Back Squat", muscle_group="legs", default_sets=3, default_reps=5)
PLANK = Exercise(
    "Plank", muscle_group="core", uses_weight=False, is_time_based=True, is_bodyweight=True
)


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime.datetime(2026, 10, 19, 18, 0, 0)

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += datetime.timedelta(seconds=seconds)


class FakePersistence:
    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.saved = []
        self.fail = fail
        self.delay = delay

    async def persist_finished_workout(self, summary) -> None:
        await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError("offline")
        self.saved.append(summary)


class MemorySnapshots:
    def __init__(self) -> None:
        self.data = None
        self.corrupt = False

    def save(self, state) -> None:
        self.data = state.to_dict()

    def load(self):
        if self.corrupt:
            raise ValueError("bad snapshot")
        if self.data is None:
            return None
        from models import WorkoutSessionState

        return WorkoutSessionState.from_dict(self.data)

    def clear(self) -> None:
        self.data = None
        self.corrupt = False


class FakeHistory:
    def __init__(self, sets, notes=None) -> None:
        self.sets = sets
        self.notes = notes

    async def fetch_previous_and_best(self, exercise_id, score_kind):
        return self.sets.get(exercise_id, {})

    async def last_notes_for(self, exercise_id):
        return self.notes


class SessionServiceTest(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.bus = EventBus()
        self.events = []
        self.bus.subscribe("*", lambda topic, payload: self.events.append((topic, payload)))
        self.timer = RestTimer(self.bus, auto_tick=False)
        self.service = WorkoutSessionService(
            FakePersistence(), bus=self.bus, rest_timer=self.timer, clock=self.clock
        )

    def topics(self):
        return [t for t, _ in self.events]

    def test_start_creates_active_session(self) -> None:
        state = self.service.start_workout(None, "Quick Workout")
        self.assertTrue(state.is_active)
        self.assertIsNone(state.routine_id)
        self.assertEqual(state.start_time, self.clock.now)
        self.assertEqual(state.exercises, [])
        self.assertTrue(self.service.has_active_workout())

    def test_start_from_routine_builds_default_sets(self) -> None:
        state = self.service.start_workout("leg-day", "Leg Day", [SQUAT, PLANK])
        squat, plank = state.exercises
        self.assertEqual([s.set_number for s in squat.sets], [1, 2, 3])
        self.assertEqual({s.reps for s in squat.sets}, {5})
        self.assertEqual(plank.sets[0].reps, 0)
        self.assertEqual(state.current_exercise, "Back Squat")

    def test_second_start_raises_conflict_and_keeps_session(self) -> None:
        self.service.start_workout("leg-day", "Leg Day", [SQUAT])
        self.service.update_set("back_squat", 1, "weight", 100)
        before = self.service.state.to_dict()
        with self.assertRaises(ConflictError) as ctx:
            self.service.start_workout("push-day", "Push Day", [BENCH])
        self.assertEqual(ctx.exception.current.routine_name, "Leg Day")
        self.assertEqual(self.service.state.to_dict(), before)

    def test_operations_require_session(self) -> None:
        with self.assertRaises(NoActiveSessionError):
            self.service.add_exercise(BENCH)
        with self.assertRaises(NoActiveSessionError):
            self.service.summary()

    def test_unknown_exercise_raises(self) -> None:
        self.service.start_workout(None, "Quick Workout")
        with self.assertRaises(ExerciseNotFoundError):
            self.service.add_set("missing")

    def test_add_exercise_appends_and_ignores_duplicates(self) -> None:
        self.service.start_workout(None, "Quick Workout", [SQUAT])
        self.service.add_exercise(BENCH)
        self.service.add_exercise(BENCH)
        state = self.service.state
        self.assertEqual([w.exercise.id for w in state.exercises], ["back_squat", "bench_press"])
        self.assertEqual(len(state.exercises[1].sets), 1)
        self.assertEqual(state.current_exercise, "Bench Press")

    def test_add_exercise_rejects_empty_name(self) -> None:
        self.service.start_workout(None, "Quick Workout")
        with self.assertRaises(ValueError):
            self.service.add_exercise(Exercise("  "))

    def test_add_set_copies_logged_values(self) -> None:
        self.service.start_workout(None, "Quick Workout", [BENCH])
        self.service.update_set("bench_press", 1, "weight", 60)
        self.service.update_set("bench_press", 1, "reps", 10)
        self.service.toggle_set_completion("bench_press", 1, True)
        new_set = self.service.add_set("bench_press")
        self.assertEqual(new_set.set_number, 2)
        self.assertEqual((new_set.weight, new_set.reps), (60.0, 10))
        self.assertFalse(new_set.is_completed)

    def test_add_set_to_empty_exercise_uses_template(self) -> None:
        self.service.start_workout(None, "Quick Workout", [SQUAT])
        for number in (3, 2, 1):
            self.service.delete_set("back_squat", number)
        new_set = self.service.add_set("back_squat")
        self.assertEqual((new_set.set_number, new_set.reps), (1, 5))

    def test_delete_set_renumbers_without_gaps(self) -> None:
        self.service.start_workout(None, "Quick Workout", [SQUAT])
        self.service.update_set("back_squat", 3, "weight", 120)
        self.service.delete_set("back_squat", 2)
        sets = self.service.state.exercises[0].sets
        self.assertEqual([s.set_number for s in sets], [1, 2])
        self.assertEqual(sets[1].weight, 120)

    def test_delete_unknown_set_is_noop(self) -> None:
        self.service.start_workout(None, "Quick Workout", [BENCH])
        self.service.delete_set("bench_press", 7)
        self.assertEqual(len(self.service.state.exercises[0].sets), 1)

    def test_update_set_clamps_and_validates(self) -> None:
        self.service.start_workout(None, "Quick Workout", [BENCH])
        self.service.update_set("bench_press", 1, "weight", -5)
        self.service.update_set("bench_press", 1, "reps", 7.9)
        s = self.service.state.exercises[0].sets[0]
        self.assertEqual(s.weight, 0)
        self.assertEqual(s.reps, 7)
        self.assertIsInstance(s.reps, int)
        with self.assertRaises(ValueError):
            self.service.update_set("bench_press", 1, "rpe", 8)

    def test_toggle_completion_tracks_count_and_signals(self) -> None:
        self.service.start_workout(None, "Quick Workout", [SQUAT])
        self.service.toggle_set_completion("back_squat", 1, True)
        self.service.toggle_set_completion("back_squat", 2)
        self.assertEqual(self.service.state.completed_sets, 2)
        self.assertEqual(self.topics().count(SET_COMPLETED), 2)
        self.service.toggle_set_completion("back_squat", 2)
        self.assertEqual(self.service.state.completed_sets, 1)
        self.assertEqual(self.topics().count(SET_COMPLETED), 2)

    def test_superset_and_dropset_are_independent(self) -> None:
        self.service.start_workout(None, "Quick Workout", [BENCH])
        self.assertTrue(self.service.toggle_superset("bench_press"))
        self.assertTrue(self.service.toggle_dropset("bench_press"))
        wex = self.service.state.exercises[0]
        self.assertTrue(wex.is_superset and wex.is_dropset)
        self.assertFalse(self.service.toggle_superset("bench_press"))

    def test_reorder_moves_exercise(self) -> None:
        self.service.start_workout(None, "Quick Workout", [BENCH, SQUAT, PLANK])
        self.service.reorder_exercises(2, 0)
        ids = [w.exercise.id for w in self.service.state.exercises]
        self.assertEqual(ids, ["plank", "bench_press", "back_squat"])

    def test_reorder_out_of_range_is_noop(self) -> None:
        self.service.start_workout(None, "Quick Workout", [BENCH, SQUAT])
        self.service.reorder_exercises(0, 2)
        self.service.reorder_exercises(-1, 0)
        ids = [w.exercise.id for w in self.service.state.exercises]
        self.assertEqual(ids, ["bench_press", "back_squat"])

    def test_remove_exercise_discards_sets(self) -> None:
        self.service.start_workout(None, "Quick Workout", [BENCH, SQUAT])
        self.service.toggle_set_completion("bench_press", 1, True)
        self.service.remove_exercise("bench_press")
        state = self.service.state
        self.assertEqual([w.exercise.id for w in state.exercises], ["back_squat"])
        self.assertEqual(state.completed_sets, 0)
        self.assertEqual(state.current_exercise, "Back Squat")

    def test_replace_exercise_keeps_logged_data(self) -> None:
        self.service.start_workout(None, "Quick Workout", [BENCH])
        self.service.update_set("bench_press", 1, "weight", 50)
        self.service.update_notes("bench_press", "elbows in")
        self.service.toggle_superset("bench_press")
        incline = Exercise("Incline Bench Press", muscle_group="chest")
        self.service.replace_exercise("bench_press", incline)
        wex = self.service.state.exercises[0]
        self.assertEqual(wex.exercise.id, "incline_bench_press")
        self.assertEqual(wex.sets[0].weight, 50)
        self.assertEqual(wex.notes, "elbows in")
        self.assertTrue(wex.is_superset)

    def test_replace_exercise_drops_old_history(self) -> None:
        records = []
        self.bus.subscribe(PERSONAL_RECORD, lambda topic, payload: records.append(payload))
        curl = Exercise("Dumbbell Curl", muscle_group="biceps")
        self.service.start_workout(None, "Quick Workout", [curl])
        history = FakeHistory(
            {"dumbbell_curl": {1: (CompletedSet(1, 10.0, 10), CompletedSet(1, 10.0, 10))}}
        )
        asyncio.run(self.service.load_history(history))
        self.assertEqual(self.service.state.exercises[0].sets[0].best_weight, 10.0)

        self.service.replace_exercise("dumbbell_curl", SQUAT)
        first = self.service.state.exercises[0].sets[0]
        self.assertIsNone(first.best_weight)
        self.assertIsNone(first.previous_reps)
        self.assertEqual(first.weight, 10.0)

        self.service.update_set("back_squat", 1, "weight", 60)
        self.service.update_set("back_squat", 1, "reps", 5)
        self.service.toggle_set_completion("back_squat", 1, True)
        self.assertEqual(records, [])

    def test_routine_modified_only_for_routines(self) -> None:
        self.service.start_workout(None, "Quick Workout")
        self.service.add_exercise(BENCH)
        self.assertFalse(self.service.state.is_routine_modified)
        self.service.discard_workout()
        self.service.start_workout("leg-day", "Leg Day", [SQUAT])
        self.service.update_set("back_squat", 1, "weight", 80)
        self.assertFalse(self.service.state.is_routine_modified)
        self.service.add_exercise(BENCH)
        self.assertTrue(self.service.state.is_routine_modified)

    def test_pause_excludes_paused_time(self) -> None:
        self.service.start_workout(None, "Quick Workout")
        self.clock.advance(60)
        self.service.pause_workout()
        self.assertFalse(self.service.state.is_active)
        self.clock.advance(600)
        self.assertEqual(self.service.elapsed_seconds(), 60)
        self.service.resume_workout()
        self.clock.advance(65)
        self.assertEqual(self.service.elapsed_seconds(), 125)
        self.assertEqual(self.service.duration_text(), "2m 5s")

    def test_discard_clears_session(self) -> None:
        self.service.start_workout(None, "Quick Workout", [BENCH])
        self.service.discard_workout()
        self.assertIsNone(self.service.state)
        self.assertEqual(self.events[-1], (SESSION_CHANGED, None))

    def test_published_state_is_a_copy(self) -> None:
        self.service.start_workout(None, "Quick Workout", [BENCH])
        published = [p for t, p in self.events if t == SESSION_CHANGED][-1]
        published.exercises.clear()
        self.assertEqual(len(self.service.state.exercises), 1)

    def test_completion_status(self) -> None:
        self.service.start_workout(None, "Quick Workout", [BENCH, SQUAT])
        self.service.toggle_set_completion("bench_press", 1, True)
        self.service.toggle_set_completion("back_squat", 1, True)
        status = self.service.completion_status()
        self.assertEqual(status.total_sets, 4)
        self.assertEqual(status.completed_sets, 2)
        self.assertEqual([e.exercise_name for e in status.completed_exercises], ["Bench Press"])
        self.assertEqual(status.incomplete_exercises[0].completed_sets, 1)
        self.assertFalse(status.is_fully_completed)

    def test_summary_counts_completed_sets_only(self) -> None:
        self.service.start_workout(None, "", [BENCH, SQUAT])
        self.service.update_set("bench_press", 1, "weight", 40)
        self.service.update_set("bench_press", 1, "reps", 10)
        self.service.toggle_set_completion("bench_press", 1, True)
        self.service.update_set("back_squat", 1, "weight", 100)
        self.clock.advance(90)
        summary = self.service.summary()
        self.assertEqual(summary.name, "Chest & Legs Workout")
        self.assertEqual(summary.total_sets, 1)
        self.assertEqual(summary.total_volume, 400)
        self.assertEqual(summary.duration_seconds, 90)
        self.assertEqual(summary.exercise_ids, ["bench_press"])

    def test_rest_timer_helpers(self) -> None:
        self.service.start_workout(None, "Quick Workout", [BENCH])
        self.service.start_rest_timer(exercise_id="bench_press")
        self.assertEqual(self.timer.state, Active(90, 90))
        self.assertEqual(self.service.rest_exercise_id, "bench_press")
        self.service.pause_resume_rest_timer()
        self.assertTrue(self.timer.is_paused)
        self.service.discard_workout()
        self.assertEqual(self.timer.state, Inactive())
        self.assertIsNone(self.service.rest_exercise_id)


class SnapshotTest(unittest.TestCase):
    def test_restores_interrupted_session(self) -> None:
        store = MemorySnapshots()
        first = WorkoutSessionService(snapshot_store=store)
        first.start_workout("leg-day", "Leg Day", [SQUAT])
        first.toggle_set_completion("back_squat", 1, True)

        second = WorkoutSessionService(snapshot_store=store)
        state = second.state
        self.assertEqual(state.routine_id, "leg-day")
        self.assertTrue(state.exercises[0].sets[0].is_completed)

    def test_corrupt_snapshot_is_discarded(self) -> None:
        store = MemorySnapshots()
        store.data = {"routine_name": "broken"}
        store.corrupt = True
        service = WorkoutSessionService(snapshot_store=store)
        self.assertIsNone(service.state)
        self.assertIsNone(store.data)

    def test_discard_clears_snapshot(self) -> None:
        store = MemorySnapshots()
        service = WorkoutSessionService(snapshot_store=store)
        service.start_workout(None, "Quick Workout")
        self.assertIsNotNone(store.data)
        service.discard_workout()
        self.assertIsNone(store.data)


class FormattingTest(unittest.TestCase):
    def test_format_duration(self) -> None:
        self.assertEqual(format_duration(45), "45s")
        self.assertEqual(format_duration(125), "2m 5s")
        self.assertEqual(format_duration(3603), "1h 0m 3s")

    def test_workout_name_for(self) -> None:
        self.assertEqual(workout_name_for([]), "Quick Workout")
        chest = WorkoutExercise.from_template(BENCH)
        back = WorkoutExercise.from_template(Exercise("Row", muscle_group="back"))
        self.assertEqual(workout_name_for([chest]), "Chest Workout")
        self.assertEqual(workout_name_for([chest, back]), "Chest & Back Workout")


@pytest.mark.asyncio
async def test_quick_workout_end_to_end():
    persistence = FakePersistence()
    service = WorkoutSessionService(persistence)
    service.start_workout(None, "Quick Workout")
    service.add_exercise(Exercise("Bench Press", uses_weight=True))
    service.add_set("bench_press")
    service.update_set("bench_press", 2, "weight", 60)
    service.update_set("bench_press", 2, "reps", 10)
    service.toggle_set_completion("bench_press", 2, True)

    summary = await service.finish_workout()

    assert summary.total_sets == 1
    assert summary.total_volume == 600
    assert summary.exercise_count == 1
    assert persistence.saved == [summary]
    assert service.state is None


@pytest.mark.asyncio
async def test_finish_failure_keeps_session():
    service = WorkoutSessionService(FakePersistence(fail=True))
    service.start_workout(None, "Quick Workout", [BENCH])
    service.toggle_set_completion("bench_press", 1, True)
    with pytest.raises(PersistenceError):
        await service.finish_workout()
    assert service.has_active_workout()
    assert service.state.completed_sets == 1


@pytest.mark.asyncio
async def test_finish_timeout_keeps_session():
    service = WorkoutSessionService(FakePersistence(delay=1.0), finish_timeout=0.01)
    service.start_workout(None, "Quick Workout", [BENCH])
    service.toggle_set_completion("bench_press", 1, True)
    with pytest.raises(PersistenceError):
        await service.finish_workout()
    assert service.has_active_workout()


@pytest.mark.asyncio
async def test_finish_without_completed_sets():
    persistence = FakePersistence()
    service = WorkoutSessionService(persistence)
    service.start_workout(None, "Quick Workout", [BENCH])
    with pytest.raises(EmptyWorkoutError):
        await service.finish_workout()
    assert service.has_active_workout()
    assert persistence.saved == []


@pytest.mark.asyncio
async def test_history_load_and_personal_record():
    bus = EventBus()
    records = []
    bus.subscribe(PERSONAL_RECORD, lambda topic, payload: records.append(payload))
    history = FakeHistory(
        {
            "bench_press": {
                1: (CompletedSet(1, 60.0, 8), CompletedSet(1, 70.0, 8)),
            }
        },
        notes="use the flat bench",
    )
    service = WorkoutSessionService(bus=bus)
    service.start_workout("push-day", "Push Day", [BENCH])
    await service.load_history(history)

    first = service.state.exercises[0].sets[0]
    assert (first.previous_weight, first.previous_reps) == (60.0, 8)
    assert (first.best_weight, first.best_reps) == (70.0, 8)
    assert (first.weight, first.reps) == (60.0, 8)
    assert service.state.exercises[0].notes == "use the flat bench"

    service.toggle_set_completion("bench_press", 1, True)
    assert records == []

    second = service.add_set("bench_press")
    assert second.best_weight is None
    service.update_set("bench_press", 1, "weight", 72.5)
    service.toggle_set_completion("bench_press", 1, False)
    service.toggle_set_completion("bench_press", 1, True)
    assert records == [
        {"exercise_id": "bench_press", "set_number": 1, "exercise": "Bench Press"}
    ]
