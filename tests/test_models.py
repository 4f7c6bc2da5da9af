import os
import sys
import datetime
import unittest
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from models import (
    Counter,
    CounterStats,
    Exercise,
    ExerciseSet,
    WorkoutExercise,
    WorkoutSessionState,
    slug_id,
)


class ExerciseTest(unittest.TestCase):
    def test_id_derived_from_name(self) -> None:
        self.assertEqual(slug_id("  Dumbbell Fly (Incline) "), "dumbbell_fly_incline")
        self.assertEqual(Exercise("Bench Press").id, "bench_press")
        self.assertEqual(Exercise("Bench Press", id="bp").id, "bp")

    def test_muscle_group_falls_back_to_primary_muscle(self) -> None:
        ex = Exercise("Pull-up", primary_muscles=["back", "biceps"])
        self.assertEqual(ex.muscle_group, "back")
        self.assertEqual(ex.primary_muscles, ("back", "biceps"))

    def test_score_kind(self) -> None:
        self.assertEqual(Exercise("Bench Press").score_kind, "weight")
        self.assertEqual(Exercise("Push-up", is_bodyweight=True).score_kind, "reps")
        self.assertEqual(Exercise("Row", tracks_distance=True).score_kind, "distance")
        plank = Exercise("Plank", uses_weight=False, is_time_based=True)
        self.assertEqual(plank.score_kind, "time")

    def test_template_sets(self) -> None:
        wex = WorkoutExercise.from_template(Exercise("Squat", default_sets=3, default_reps=8))
        self.assertEqual([s.set_number for s in wex.sets], [1, 2, 3])
        self.assertEqual({s.reps for s in wex.sets}, {8})
        plank = WorkoutExercise.from_template(
            Exercise("Plank", uses_weight=False, is_time_based=True, default_sets=0)
        )
        self.assertEqual(len(plank.sets), 1)
        self.assertEqual(plank.sets[0].reps, 0)

    def test_has_previous(self) -> None:
        self.assertFalse(ExerciseSet(1).has_previous())
        self.assertFalse(ExerciseSet(1, previous_weight=50).has_previous())
        self.assertTrue(ExerciseSet(1, previous_weight=50, previous_reps=5).has_previous())
        self.assertTrue(ExerciseSet(1, previous_time=30).has_previous())


class SessionStateTest(unittest.TestCase):
    def test_dict_round_trip_keeps_paused_state(self) -> None:
        state = WorkoutSessionState(
            routine_id=None,
            routine_name="Quick Workout",
            exercises=[WorkoutExercise.from_template(Exercise("Deadlift"))],
            start_time=datetime.datetime(2026, 10, 19, 6, 0),
            is_active=False,
            paused_at=datetime.datetime(2026, 10, 19, 6, 20),
            total_paused_seconds=30.0,
        )
        data = state.to_dict()
        self.assertEqual(data["paused_at"], "2026-10-19T06:20:00")
        self.assertEqual(WorkoutSessionState.from_dict(data), state)


class CounterTest(unittest.TestCase):
    def test_reset_for_new_day(self) -> None:
        counter = Counter("Push-ups", "u1", today_count=5, current_count=50, last_reset_date="2026-10-18")
        reset = counter.reset_for("2026-10-19")
        self.assertEqual((reset.today_count, reset.current_count), (0, 50))
        self.assertIs(reset.reset_for("2026-10-19"), reset)

    def test_with_delta_clamps(self) -> None:
        counter = Counter("Push-ups", "u1", today_count=1, current_count=1, last_reset_date="2026-10-19")
        lowered = counter.with_delta(-5, "2026-10-19")
        self.assertEqual((lowered.today_count, lowered.current_count), (0, 0))

    def test_stats_adjusted(self) -> None:
        stats = CounterStats(yesterday=3, today=1, this_week=4, this_month=4, this_year=4, all_time=9)
        lowered = stats.adjusted(-2)
        self.assertEqual(lowered.yesterday, 3)
        self.assertEqual(lowered.today, 0)
        self.assertEqual(lowered.all_time, 7)


if __name__ == "__main__":
    unittest.main()
