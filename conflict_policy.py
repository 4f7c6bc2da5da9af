"""Decide what to do when a workout is requested while another is active."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional, Union

from models import Exercise, WorkoutExercise, WorkoutSessionState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StartImmediately:
    routine_id: Optional[str]
    routine_name: str


@dataclass(frozen=True)
class ResumeExisting:
    session: WorkoutSessionState


@dataclass(frozen=True)
class RequiresUserChoice:
    current: WorkoutSessionState
    requested_routine_id: Optional[str]
    requested_routine_name: str


StartOutcome = Union[StartImmediately, ResumeExisting, RequiresUserChoice]


class UserChoice(str, Enum):
    RESUME_CURRENT = "resume_current"
    DISCARD_AND_START_NEW = "discard_and_start_new"
    CANCEL = "cancel"


@dataclass(frozen=True)
class Resolution:
    """Result of acting on an outcome.

    ``session`` is the workout to show, or None when nothing should happen.
    """

    session: Optional[WorkoutSessionState]
    navigate: bool


def resolve_start_request(
    current: Optional[WorkoutSessionState],
    requested_routine_id: Optional[str],
    requested_routine_name: str,
) -> StartOutcome:
    """Pure decision; never touches session state.

    Two ad-hoc workouts (both without a routine id) are treated as different
    workouts, so the user is asked.
    """
    if current is None:
        return StartImmediately(requested_routine_id, requested_routine_name)
    if requested_routine_id is not None and current.routine_id == requested_routine_id:
        return ResumeExisting(current)
    return RequiresUserChoice(current, requested_routine_id, requested_routine_name)


ExerciseList = Iterable[Union[WorkoutExercise, Exercise]]


def apply_choice(
    service,
    outcome: StartOutcome,
    choice: UserChoice | None = None,
    exercises: ExerciseList = (),
) -> Resolution:
    """Perform the session operations an outcome (and user choice) calls for."""
    if isinstance(outcome, StartImmediately):
        session = service.start_workout(outcome.routine_id, outcome.routine_name, exercises)
        return Resolution(session, True)
    if isinstance(outcome, ResumeExisting):
        return Resolution(service.state, True)
    if choice is None:
        raise ValueError("a user choice is required for a conflicting workout")
    choice = UserChoice(choice)
    if choice is UserChoice.RESUME_CURRENT:
        return Resolution(service.state, True)
    if choice is UserChoice.CANCEL:
        return Resolution(None, False)
    logger.info(
        "discarding %s to start %s",
        outcome.current.routine_name,
        outcome.requested_routine_name,
    )
    service.discard_workout()
    session = service.start_workout(
        outcome.requested_routine_id, outcome.requested_routine_name, exercises
    )
    return Resolution(session, True)


ChooseCallback = Callable[
    [RequiresUserChoice], Union[UserChoice, str, Awaitable[Union[UserChoice, str]]]
]


async def request_workout(
    service,
    routine_id: Optional[str],
    routine_name: str,
    exercises: ExerciseList = (),
    choose: ChooseCallback | None = None,
) -> Resolution:
    """Resolve a start request end to end, asking ``choose`` only on conflict."""
    outcome = resolve_start_request(service.state, routine_id, routine_name)
    choice = None
    if isinstance(outcome, RequiresUserChoice):
        if choose is None:
            return Resolution(None, False)
        choice = choose(outcome)
        if inspect.isawaitable(choice):
            choice = await choice
    return apply_choice(service, outcome, choice, exercises)
