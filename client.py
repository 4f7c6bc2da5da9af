import requests
from typing import Optional


class EngineClient:
    """Simple REST client for the workout engine API.

    ``session`` defaults to a ``requests.Session``; any object with the same
    ``get``/``post``/``put``/``delete`` interface can be passed instead.
    """

    def __init__(self, base_url: str = "http://localhost:8000", session=None) -> None:
        self.base_url = base_url.rstrip("/")
        self.http = session or requests.Session()

    def _request(self, method: str, path: str, params: Optional[dict] = None, json=None):
        params = {k: v for k, v in (params or {}).items() if v is not None}
        resp = self.http.request(
            method, f"{self.base_url}{path}", params=params or None, json=json
        )
        resp.raise_for_status()
        return resp.json()

    def health(self) -> dict:
        return self._request("GET", "/health")

    def session(self) -> dict:
        return self._request("GET", "/session")

    def start_workout(
        self, routine_name: str = "Quick Workout", routine_id: Optional[str] = None, exercises=None
    ) -> dict:
        body = {
            "routine_id": routine_id,
            "routine_name": routine_name,
            "exercises": list(exercises or []),
        }
        return self._request("POST", "/session/start", json=body)

    def resolve_workout(
        self,
        choice: str,
        routine_name: str = "Quick Workout",
        routine_id: Optional[str] = None,
        exercises=None,
    ) -> dict:
        body = {
            "routine_id": routine_id,
            "routine_name": routine_name,
            "exercises": list(exercises or []),
            "choice": choice,
        }
        return self._request("POST", "/session/resolve", json=body)

    def add_exercise(self, name: str, **fields) -> dict:
        return self._request("POST", "/session/exercises", json={"name": name, **fields})

    def add_set(self, exercise_id: str) -> dict:
        return self._request("POST", f"/session/exercises/{exercise_id}/sets")

    def update_set(self, exercise_id: str, set_number: int, field: str, value: float) -> dict:
        return self._request(
            "PUT",
            f"/session/exercises/{exercise_id}/sets/{set_number}",
            params={"field": field, "value": value},
        )

    def complete_set(self, exercise_id: str, set_number: int, completed: bool = True) -> dict:
        return self._request(
            "POST",
            f"/session/exercises/{exercise_id}/sets/{set_number}/complete",
            params={"completed": str(completed).lower()},
        )

    def finish_workout(self) -> dict:
        return self._request("POST", "/session/finish")

    def discard_workout(self) -> dict:
        return self._request("POST", "/session/discard")

    def list_counters(self) -> list:
        return self._request("GET", "/counters")

    def create_counter(self, name: str) -> dict:
        return self._request("POST", "/counters", params={"name": name})

    def increment(self, counter_id: str) -> dict:
        return self._request("POST", f"/counters/{counter_id}/increment")

    def decrement(self, counter_id: str) -> dict:
        return self._request("POST", f"/counters/{counter_id}/decrement")

    def set_today_count(self, counter_id: str, value: int) -> dict:
        return self._request("PUT", f"/counters/{counter_id}/today", params={"value": value})

    def counter_stats(self, counter_id: str) -> dict:
        return self._request("GET", f"/counters/{counter_id}/stats")

    def list_history(self, **params) -> list:
        return self._request("GET", "/history", params=params)
