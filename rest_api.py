import asyncio
import dataclasses
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, APIRouter, WebSocket
from pydantic import BaseModel

from algorithms import WeightConverter
from config import APP_VERSION, load_settings
from conflict_policy import (
    RequiresUserChoice,
    ResumeExisting,
    UserChoice,
    apply_choice,
    resolve_start_request,
)
from counter_service import CounterService
from db import AsyncCounterRepository, AsyncWorkoutHistoryRepository, SessionStateRepository
from errors import (
    ConflictError,
    CounterNotFoundError,
    EngineError,
    ExerciseNotFoundError,
    NoActiveSessionError,
    PersistenceError,
)
from events import ALL_TOPICS, EventBus, TIMER_CHANGED
from models import Counter, Exercise, to_dict
from rest_timer import RestTimer, describe
from session_service import WorkoutSessionService

logger = logging.getLogger(__name__)


class ExerciseIn(BaseModel):
    name: str
    id: str = ""
    muscle_group: str = ""
    primary_muscles: List[str] = []
    equipment: str = ""
    default_reps: int = 15
    default_sets: int = 1
    is_bodyweight: bool = False
    uses_weight: bool = True
    tracks_distance: bool = False
    is_time_based: bool = False
    description: str = ""

    def to_exercise(self) -> Exercise:
        return Exercise(**self.model_dump())


class StartIn(BaseModel):
    routine_id: Optional[str] = None
    routine_name: str = "Quick Workout"
    exercises: List[ExerciseIn] = []


class ResolveIn(StartIn):
    choice: UserChoice


class EngineAPI:
    """Provides REST endpoints for the workout session engine."""

    def __init__(
        self,
        db_path: str = "workout.db",
        yaml_path: str = "settings.yaml",
        *,
        user_id: str = "local",
    ) -> None:
        self.db_path = db_path
        self.user_id = user_id
        self.settings = load_settings(yaml_path)
        self.bus = EventBus()
        self.history = AsyncWorkoutHistoryRepository(db_path)
        self.counter_repo = AsyncCounterRepository(db_path)
        self.snapshots = SessionStateRepository(db_path)
        self.rest_timer = RestTimer(
            self.bus,
            tick_interval=self.settings.rest_tick_seconds,
            warning_ticks=self.settings.rest_warning_ticks,
        )
        self.session = WorkoutSessionService(
            self.history,
            self.snapshots,
            self.bus,
            self.rest_timer,
            finish_timeout=self.settings.finish_timeout,
            default_rest_seconds=self.settings.default_rest_seconds,
        )
        self.counters = CounterService(
            self.counter_repo,
            self.bus,
            debounce_ms=self.settings.counter_debounce_ms,
            settle_ms=self.settings.counter_settle_ms,
            sync_timeout=self.settings.counter_sync_timeout,
        )
        self.counter_repo.watch(self.counters.on_remote_snapshot)
        self._counters_loaded = False
        self.watchers: list[WebSocket] = []
        self._pending_broadcasts: set[asyncio.Task] = set()
        self.bus.subscribe(ALL_TOPICS, self._on_event)

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            yield
            self.rest_timer.stop()
            await self.counters.close()

        self.app = FastAPI(
            title="Workout Engine API",
            description="REST API for the active workout session, rest timer and counters",
            lifespan=lifespan,
        )
        self._setup_routes()

    @staticmethod
    def _event_payload(topic: str, payload):
        if topic == TIMER_CHANGED:
            return describe(payload)
        if dataclasses.is_dataclass(payload):
            return to_dict(payload)
        return payload

    def _on_event(self, topic: str, payload) -> None:
        self._broadcast_event({"type": topic, "data": self._event_payload(topic, payload)})

    async def _broadcast(self, event: dict) -> None:
        for ws in list(self.watchers):
            try:
                await ws.send_json(event)
            except Exception:
                logger.debug("dropping websocket watcher", exc_info=True)
                if ws in self.watchers:
                    self.watchers.remove(ws)

    def _broadcast_event(self, event: dict) -> None:
        if not self.watchers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self._broadcast(event))
            return
        task = loop.create_task(self._broadcast(event))
        self._pending_broadcasts.add(task)
        task.add_done_callback(self._pending_broadcasts.discard)

    @staticmethod
    def _error(e: Exception) -> HTTPException:
        if isinstance(e, ConflictError):
            return HTTPException(status_code=409, detail=str(e))
        if isinstance(e, (NoActiveSessionError, ExerciseNotFoundError, CounterNotFoundError)):
            return HTTPException(status_code=404, detail=str(e))
        if isinstance(e, PersistenceError):
            return HTTPException(status_code=503, detail=str(e))
        if isinstance(e, ValueError):
            return HTTPException(status_code=400, detail=str(e))
        if isinstance(e, EngineError):
            return HTTPException(status_code=409, detail=str(e))
        return HTTPException(status_code=500, detail=str(e))

    def _session_view(self) -> dict:
        state = self.session.state
        if state is None:
            return {"active": False, "session": None, "duration": None}
        return {
            "active": True,
            "session": state.to_dict(),
            "duration": self.session.duration_text(),
        }

    def _counter_view(self, counter: Counter) -> dict:
        data = to_dict(counter)
        data["is_syncing"] = self.counters.is_syncing(counter.id)
        return data

    async def _ensure_counters(self) -> None:
        if not self._counters_loaded:
            await self.counters.load(self.user_id)
            self._counters_loaded = True

    async def _after_start(self) -> None:
        try:
            await self.session.load_history(self.history)
        except Exception:
            logger.warning("loading exercise history failed", exc_info=True)

    def _setup_routes(self) -> None:
        session_router = APIRouter(prefix="/session", tags=["Session"])
        timer_router = APIRouter(prefix="/rest_timer", tags=["Rest Timer"])
        counters_router = APIRouter(prefix="/counters", tags=["Counters"])
        history_router = APIRouter(prefix="/history", tags=["History"])

        @self.app.get(
            "/health",
            summary="Health check",
            description="Verify API and database connectivity.",
        )
        async def health():
            """Return API and database connection status."""
            try:
                await self.history.fetch_history(limit=1)
                return {"status": "ok", "version": APP_VERSION}
            except Exception as e:  # pragma: no cover - connectivity failure
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.websocket("/ws/updates")
        async def updates_socket(ws: WebSocket):
            await ws.accept()
            self.watchers.append(ws)
            try:
                while True:
                    await ws.receive_text()
            except Exception:
                logger.debug("websocket watcher disconnected")
            finally:
                if ws in self.watchers:
                    self.watchers.remove(ws)

        @session_router.get("")
        async def get_session():
            return self._session_view()

        @session_router.post(
            "/start",
            summary="Start workout",
            description="Start a workout, resuming the active one if it is the same routine.",
        )
        async def start_session(body: StartIn):
            outcome = resolve_start_request(
                self.session.state, body.routine_id, body.routine_name
            )
            if isinstance(outcome, RequiresUserChoice):
                raise HTTPException(
                    status_code=409,
                    detail={
                        "message": "another workout is active",
                        "current_routine_id": outcome.current.routine_id,
                        "current_routine_name": outcome.current.routine_name,
                        "choices": [c.value for c in UserChoice],
                    },
                )
            try:
                apply_choice(
                    self.session,
                    outcome,
                    exercises=[e.to_exercise() for e in body.exercises],
                )
            except (EngineError, ValueError) as e:
                raise self._error(e)
            if not isinstance(outcome, ResumeExisting):
                await self._after_start()
            view = self._session_view()
            view["outcome"] = "resumed" if isinstance(outcome, ResumeExisting) else "started"
            return view

        @session_router.post("/resolve")
        async def resolve_session(body: ResolveIn):
            outcome = resolve_start_request(
                self.session.state, body.routine_id, body.routine_name
            )
            try:
                resolution = apply_choice(
                    self.session,
                    outcome,
                    body.choice,
                    exercises=[e.to_exercise() for e in body.exercises],
                )
            except (EngineError, ValueError) as e:
                raise self._error(e)
            if body.choice is UserChoice.DISCARD_AND_START_NEW:
                await self._after_start()
            view = self._session_view()
            view["navigate"] = resolution.navigate
            return view

        @session_router.post("/exercises")
        async def add_exercise(body: ExerciseIn):
            try:
                self.session.add_exercise(body.to_exercise())
            except (EngineError, ValueError) as e:
                raise self._error(e)
            return self._session_view()

        @session_router.put("/exercises/{exercise_id}")
        async def replace_exercise(exercise_id: str, body: ExerciseIn):
            try:
                self.session.replace_exercise(exercise_id, body.to_exercise())
            except (EngineError, ValueError) as e:
                raise self._error(e)
            return self._session_view()

        @session_router.delete("/exercises/{exercise_id}")
        async def remove_exercise(exercise_id: str):
            try:
                self.session.remove_exercise(exercise_id)
            except (EngineError, ValueError) as e:
                raise self._error(e)
            return {"status": "deleted"}

        @session_router.post("/exercises/{exercise_id}/sets")
        async def add_set(exercise_id: str):
            try:
                new_set = self.session.add_set(exercise_id)
            except (EngineError, ValueError) as e:
                raise self._error(e)
            return to_dict(new_set)

        @session_router.put("/exercises/{exercise_id}/sets/{set_number}")
        async def update_set(exercise_id: str, set_number: int, field: str, value: float):
            try:
                self.session.update_set(exercise_id, set_number, field, value)
            except (EngineError, ValueError) as e:
                raise self._error(e)
            return {"status": "updated"}

        @session_router.delete("/exercises/{exercise_id}/sets/{set_number}")
        async def delete_set(exercise_id: str, set_number: int):
            try:
                self.session.delete_set(exercise_id, set_number)
            except (EngineError, ValueError) as e:
                raise self._error(e)
            return {"status": "deleted"}

        @session_router.post("/exercises/{exercise_id}/sets/{set_number}/complete")
        async def complete_set(exercise_id: str, set_number: int, completed: bool = True):
            try:
                result = self.session.toggle_set_completion(exercise_id, set_number, completed)
            except (EngineError, ValueError) as e:
                raise self._error(e)
            if result is None:
                raise HTTPException(status_code=404, detail="set not found")
            return to_dict(result)

        @session_router.post("/exercises/{exercise_id}/superset")
        async def toggle_superset(exercise_id: str):
            try:
                return {"is_superset": self.session.toggle_superset(exercise_id)}
            except (EngineError, ValueError) as e:
                raise self._error(e)

        @session_router.post("/exercises/{exercise_id}/dropset")
        async def toggle_dropset(exercise_id: str):
            try:
                return {"is_dropset": self.session.toggle_dropset(exercise_id)}
            except (EngineError, ValueError) as e:
                raise self._error(e)

        @session_router.put("/exercises/{exercise_id}/notes")
        async def update_notes(exercise_id: str, notes: str = ""):
            try:
                self.session.update_notes(exercise_id, notes)
            except (EngineError, ValueError) as e:
                raise self._error(e)
            return {"status": "updated"}

        @session_router.post("/reorder")
        async def reorder(from_index: int, to_index: int):
            try:
                self.session.reorder_exercises(from_index, to_index)
            except (EngineError, ValueError) as e:
                raise self._error(e)
            return self._session_view()

        @session_router.post("/pause")
        async def pause_session():
            try:
                self.session.pause_workout()
            except EngineError as e:
                raise self._error(e)
            return {"status": "paused"}

        @session_router.post("/resume")
        async def resume_session():
            try:
                self.session.resume_workout()
            except EngineError as e:
                raise self._error(e)
            return {"status": "active"}

        @session_router.get("/status")
        async def completion_status():
            try:
                return to_dict(self.session.completion_status())
            except EngineError as e:
                raise self._error(e)

        @session_router.post(
            "/finish",
            summary="Finish workout",
            description="Persist the workout and clear the session; the session is kept when saving fails.",
        )
        async def finish_session():
            try:
                summary = await self.session.finish_workout()
            except (EngineError, ValueError) as e:
                raise self._error(e)
            data = summary.to_dict()
            data["volume_unit"] = self.settings.weight_unit
            data["total_volume_display"] = WeightConverter.from_kg(
                summary.total_volume, self.settings.weight_unit
            )
            return data

        @session_router.post("/discard")
        async def discard_session():
            self.session.discard_workout()
            return {"status": "discarded"}

        @timer_router.get("")
        async def get_rest_timer():
            data = describe(self.rest_timer.state)
            data["exercise_id"] = self.session.rest_exercise_id
            return data

        @timer_router.post("/start")
        async def start_rest_timer(seconds: int | None = None, exercise_id: str | None = None):
            self.session.start_rest_timer(seconds, exercise_id)
            return describe(self.rest_timer.state)

        @timer_router.post("/pause_resume")
        async def pause_resume_rest_timer():
            self.session.pause_resume_rest_timer()
            return describe(self.rest_timer.state)

        @timer_router.post("/stop")
        async def stop_rest_timer():
            self.session.stop_rest_timer()
            return describe(self.rest_timer.state)

        @counters_router.get("")
        async def list_counters():
            try:
                await self._ensure_counters()
            except PersistenceError as e:
                raise self._error(e)
            return [self._counter_view(c) for c in self.counters.counters]

        @counters_router.post("")
        async def create_counter(name: str):
            try:
                await self._ensure_counters()
                counter = await self.counters.create_counter(name, self.user_id)
            except (EngineError, ValueError) as e:
                raise self._error(e)
            return self._counter_view(counter)

        @counters_router.put("/{counter_id}")
        async def rename_counter(counter_id: str, name: str):
            try:
                await self._ensure_counters()
                counter = await self.counters.rename_counter(counter_id, name)
            except (EngineError, ValueError) as e:
                raise self._error(e)
            return self._counter_view(counter)

        @counters_router.delete("/{counter_id}")
        async def delete_counter(counter_id: str):
            try:
                await self._ensure_counters()
                await self.counters.delete_counter(counter_id)
            except (EngineError, ValueError) as e:
                raise self._error(e)
            return {"status": "deleted"}

        @counters_router.post("/{counter_id}/increment")
        async def increment_counter(counter_id: str):
            try:
                await self._ensure_counters()
                counter = self.counters.increment(counter_id)
            except (EngineError, ValueError) as e:
                raise self._error(e)
            return self._counter_view(counter)

        @counters_router.post("/{counter_id}/decrement")
        async def decrement_counter(counter_id: str):
            try:
                await self._ensure_counters()
                counter = self.counters.decrement(counter_id)
            except (EngineError, ValueError) as e:
                raise self._error(e)
            return self._counter_view(counter)

        @counters_router.put("/{counter_id}/today")
        async def set_today_count(counter_id: str, value: int):
            try:
                await self._ensure_counters()
                counter = await self.counters.set_exact_today_count(counter_id, value)
            except (EngineError, ValueError) as e:
                raise self._error(e)
            return self._counter_view(counter)

        @counters_router.get("/{counter_id}/stats")
        async def counter_stats(counter_id: str):
            try:
                await self._ensure_counters()
                stats = await self.counters.stats(counter_id)
            except (EngineError, ValueError) as e:
                raise self._error(e)
            return to_dict(stats)

        @counters_router.post("/flush")
        async def flush_counters():
            try:
                await self.counters.flush()
            except EngineError as e:
                raise self._error(e)
            return {"status": "flushed"}

        @history_router.get("")
        async def list_history(
            start_date: str = None,
            end_date: str = None,
            limit: int | None = None,
            offset: int | None = None,
        ):
            rows = await self.history.fetch_history(
                start_date, end_date, limit=limit, offset=offset
            )
            return [
                {
                    "id": wid,
                    "name": name,
                    "routine_id": routine_id,
                    "start_time": start,
                    "end_time": end,
                    "duration_seconds": duration,
                    "total_sets": total_sets,
                    "total_volume": volume,
                }
                for wid, name, routine_id, start, end, duration, total_sets, volume in rows
            ]

        @history_router.get("/{workout_id}")
        async def get_history(workout_id: str):
            try:
                summary = await self.history.fetch_detail(workout_id)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))
            return summary.to_dict()

        @history_router.delete("/{workout_id}")
        async def delete_history(workout_id: str):
            try:
                await self.history.delete(workout_id)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))
            return {"status": "deleted"}

        self.app.include_router(session_router)
        self.app.include_router(timer_router)
        self.app.include_router(counters_router)
        self.app.include_router(history_router)


def create_app(db_path: str = "workout.db", yaml_path: str = "settings.yaml") -> FastAPI:
    return EngineAPI(db_path, yaml_path).app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app())
