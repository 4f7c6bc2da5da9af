import sqlite3
import aiosqlite
import csv
import io
import json
import datetime
import logging
from contextlib import contextmanager, asynccontextmanager
from typing import Callable, List, Optional, Tuple

from algorithms import MathTools
from models import (
    CompletedExercise,
    CompletedSet,
    Counter,
    CounterEntry,
    CounterStats,
    WorkoutSessionState,
    WorkoutSummary,
)

logger = logging.getLogger(__name__)


class Database:
    """Provides SQLite connection management and schema initialization."""

    _TABLE_DEFINITIONS = {
        "workout_history": (
            """CREATE TABLE workout_history (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    routine_id TEXT,
                    start_time TEXT NOT NULL,
                    end_time TEXT NOT NULL,
                    duration_seconds REAL NOT NULL DEFAULT 0,
                    total_sets INTEGER NOT NULL DEFAULT 0,
                    total_volume REAL NOT NULL DEFAULT 0
                );""",
            [
                "id",
                "name",
                "routine_id",
                "start_time",
                "end_time",
                "duration_seconds",
                "total_sets",
                "total_volume",
            ],
        ),
        "history_exercises": (
            """CREATE TABLE history_exercises (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workout_id TEXT NOT NULL,
                    position INTEGER NOT NULL DEFAULT 0,
                    exercise_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    notes TEXT,
                    muscle_group TEXT,
                    equipment TEXT,
                    FOREIGN KEY(workout_id) REFERENCES workout_history(id) ON DELETE CASCADE
                );""",
            [
                "id",
                "workout_id",
                "position",
                "exercise_id",
                "name",
                "notes",
                "muscle_group",
                "equipment",
            ],
        ),
        "history_sets": (
            """CREATE TABLE history_sets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    history_exercise_id INTEGER NOT NULL,
                    set_number INTEGER NOT NULL,
                    weight REAL NOT NULL DEFAULT 0,
                    reps INTEGER NOT NULL DEFAULT 0,
                    distance REAL NOT NULL DEFAULT 0,
                    time REAL NOT NULL DEFAULT 0,
                    FOREIGN KEY(history_exercise_id) REFERENCES history_exercises(id) ON DELETE CASCADE
                );""",
            ["id", "history_exercise_id", "set_number", "weight", "reps", "distance", "time"],
        ),
        "counters": (
            """CREATE TABLE counters (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    current_count INTEGER NOT NULL DEFAULT 0,
                    today_count INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL,
                    last_reset_date TEXT NOT NULL
                );""",
            [
                "id",
                "user_id",
                "name",
                "current_count",
                "today_count",
                "created_at",
                "last_reset_date",
            ],
        ),
        "counter_entries": (
            """CREATE TABLE counter_entries (
                    id TEXT PRIMARY KEY,
                    counter_id TEXT NOT NULL,
                    count INTEGER NOT NULL,
                    date TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    FOREIGN KEY(counter_id) REFERENCES counters(id) ON DELETE CASCADE
                );""",
            ["id", "counter_id", "count", "date", "timestamp"],
        ),
        "session_state": (
            """CREATE TABLE session_state (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );""",
            ["id", "data", "updated_at"],
        ),
    }

    def __init__(self, db_path: str = "workout.db") -> None:
        self._db_path = db_path
        self._ensure_schema()

    @contextmanager
    def _connection(self):
        connection = sqlite3.connect(self._db_path)
        connection.execute("PRAGMA foreign_keys=on;")
        try:
            yield connection
            connection.commit()
        finally:
            connection.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute("PRAGMA foreign_keys=off;")
            for table, (sql, columns) in self._TABLE_DEFINITIONS.items():
                self._ensure_table(conn, table, sql, columns)
            cursor.execute("PRAGMA foreign_keys=on;")

    def _ensure_table(
        self, conn: sqlite3.Connection, table: str, sql: str, columns: List[str]
    ) -> None:
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?;", (table,)
        )
        if cur.fetchone() is None:
            conn.execute(sql)
            return

        cur = conn.execute(f"PRAGMA table_info({table});")
        existing_cols = [row[1] for row in cur.fetchall()]
        if existing_cols == columns:
            return

        logger.info("migrating table %s", table)
        conn.execute(f"DROP TABLE IF EXISTS {table}_old;")
        conn.execute(f"ALTER TABLE {table} RENAME TO {table}_old;")
        conn.execute(sql)

        common = [c for c in existing_cols if c in columns]
        if common:
            cols = ", ".join(common)
            missing = [c for c in columns if c not in existing_cols]
            if missing:
                def default_val(col: str) -> str:
                    if col in ("position", "duration_seconds", "total_sets", "total_volume"):
                        return "0"
                    if col in ("current_count", "today_count", "created_at", "timestamp"):
                        return "0"
                    if col in ("weight", "reps", "distance", "time"):
                        return "0"
                    if col in ("last_reset_date", "updated_at"):
                        return "date('now')"
                    if col == "name":
                        return "''"
                    return "NULL"

                defaults = ", ".join(default_val(c) for c in missing)
                conn.execute(
                    f"INSERT INTO {table} ({cols}, {', '.join(missing)}) SELECT {cols}, {defaults} FROM {table}_old;"
                )
            else:
                conn.execute(
                    f"INSERT INTO {table} ({cols}) SELECT {cols} FROM {table}_old;"
                )
        conn.execute(f"DROP TABLE {table}_old;")


class BaseRepository(Database):
    """Base repository providing helper methods."""

    def execute(self, query: str, params: Tuple = ()) -> int:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return cursor.lastrowid

    def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return cursor.fetchall()

    def _delete_all(self, table: str) -> None:
        self.execute(f"DELETE FROM {table};")


class AsyncDatabase(Database):
    """Provides asynchronous connection management."""

    @asynccontextmanager
    async def _async_connection(self):
        conn = await aiosqlite.connect(self._db_path)
        try:
            await conn.execute("PRAGMA foreign_keys=on;")
            yield conn
            await conn.commit()
        finally:
            await conn.close()


class AsyncBaseRepository(AsyncDatabase):
    """Asynchronous variant of BaseRepository using aiosqlite."""

    async def execute(self, query: str, params: Tuple = ()) -> int:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            await conn.commit()
            return cursor.lastrowid

    async def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            return rows

    async def _delete_all(self, table: str) -> None:
        await self.execute(f"DELETE FROM {table};")


class AsyncWorkoutHistoryRepository(AsyncBaseRepository):
    """Finished workouts and the historical data derived from them."""

    async def persist_finished_workout(self, summary: WorkoutSummary) -> None:
        async with self._async_connection() as conn:
            await conn.execute(
                "INSERT INTO workout_history (id, name, routine_id, start_time, end_time, duration_seconds, total_sets, total_volume) VALUES (?, ?, ?, ?, ?, ?, ?, ?);",
                (
                    summary.id,
                    summary.name,
                    summary.routine_id,
                    summary.start_time.isoformat(),
                    summary.end_time.isoformat(),
                    summary.duration_seconds,
                    summary.total_sets,
                    summary.total_volume,
                ),
            )
            for position, ex in enumerate(summary.exercises):
                cursor = await conn.execute(
                    "INSERT INTO history_exercises (workout_id, position, exercise_id, name, notes, muscle_group, equipment) VALUES (?, ?, ?, ?, ?, ?, ?);",
                    (
                        summary.id,
                        position,
                        ex.exercise_id,
                        ex.name,
                        ex.notes,
                        ex.muscle_group,
                        ex.equipment,
                    ),
                )
                history_exercise_id = cursor.lastrowid
                await conn.executemany(
                    "INSERT INTO history_sets (history_exercise_id, set_number, weight, reps, distance, time) VALUES (?, ?, ?, ?, ?, ?);",
                    [
                        (history_exercise_id, s.set_number, s.weight, s.reps, s.distance, s.time)
                        for s in ex.sets
                    ],
                )
        logger.debug("stored workout %s", summary.id)

    async def fetch_history(
        self,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        descending: bool = True,
        limit: int | None = None,
        offset: int | None = None,
    ) -> List[Tuple[str, str, Optional[str], str, str, float, int, float]]:
        query = (
            "SELECT id, name, routine_id, start_time, end_time, duration_seconds, total_sets, total_volume FROM workout_history"
        )
        params: list[str | int] = []
        where_clauses: list[str] = []
        if start_date:
            where_clauses.append("date(start_time) >= ?")
            params.append(start_date)
        if end_date:
            where_clauses.append("date(start_time) <= ?")
            params.append(end_date)
        if where_clauses:
            query += " WHERE " + " AND ".join(where_clauses)
        order = "DESC" if descending else "ASC"
        query += f" ORDER BY end_time {order}"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        if offset is not None:
            if limit is None:
                query += " LIMIT -1"
            query += " OFFSET ?"
            params.append(offset)
        query += ";"
        return await self.fetch_all(query, tuple(params))

    async def fetch_detail(self, workout_id: str) -> WorkoutSummary:
        rows = await self.fetch_all(
            "SELECT id, name, routine_id, start_time, end_time, duration_seconds, total_sets, total_volume FROM workout_history WHERE id = ?;",
            (workout_id,),
        )
        if not rows:
            raise ValueError("workout not found")
        wid, name, routine_id, start, end, duration, total_sets, total_volume = rows[0]
        ex_rows = await self.fetch_all(
            "SELECT id, exercise_id, name, notes, muscle_group, equipment FROM history_exercises WHERE workout_id = ? ORDER BY position;",
            (workout_id,),
        )
        exercises = []
        for hid, exercise_id, ex_name, notes, group, equipment in ex_rows:
            set_rows = await self.fetch_all(
                "SELECT set_number, weight, reps, distance, time FROM history_sets WHERE history_exercise_id = ? ORDER BY set_number;",
                (hid,),
            )
            exercises.append(
                CompletedExercise(
                    exercise_id=exercise_id,
                    name=ex_name,
                    notes=notes or "",
                    muscle_group=group or "",
                    equipment=equipment or "",
                    sets=tuple(CompletedSet(*row) for row in set_rows),
                )
            )
        return WorkoutSummary(
            id=wid,
            name=name,
            routine_id=routine_id,
            start_time=datetime.datetime.fromisoformat(start),
            end_time=datetime.datetime.fromisoformat(end),
            duration_seconds=float(duration),
            total_sets=int(total_sets),
            total_volume=float(total_volume),
            exercises=tuple(exercises),
        )

    async def delete(self, workout_id: str) -> None:
        rows = await self.fetch_all(
            "SELECT id FROM workout_history WHERE id = ?;",
            (workout_id,),
        )
        if not rows:
            raise ValueError("workout not found")
        await self.execute("DELETE FROM workout_history WHERE id = ?;", (workout_id,))

    async def fetch_previous_and_best(
        self, exercise_id: str, score_kind: str
    ) -> dict[int, tuple[Optional[CompletedSet], Optional[CompletedSet]]]:
        """Map set number to (set from the last workout, best set ever)."""
        rows = await self.fetch_all(
            "SELECT w.id, s.set_number, s.weight, s.reps, s.distance, s.time "
            "FROM history_sets s "
            "JOIN history_exercises e ON s.history_exercise_id = e.id "
            "JOIN workout_history w ON e.workout_id = w.id "
            "WHERE e.exercise_id = ? ORDER BY w.end_time DESC, s.set_number;",
            (exercise_id,),
        )
        if not rows:
            return {}
        latest = rows[0][0]
        previous: dict[int, CompletedSet] = {}
        best: dict[int, CompletedSet] = {}
        for wid, number, weight, reps, distance, time in rows:
            completed = CompletedSet(number, weight, reps, distance, time)
            if wid == latest:
                previous[number] = completed
            score = MathTools.set_score(score_kind, weight, reps, distance, time)
            current = best.get(number)
            if current is None or score > MathTools.set_score(
                score_kind, current.weight, current.reps, current.distance, current.time
            ):
                best[number] = completed
        return {
            number: (previous.get(number), best.get(number))
            for number in sorted(set(previous) | set(best))
        }

    async def last_notes_for(self, exercise_id: str) -> Optional[str]:
        rows = await self.fetch_all(
            "SELECT e.notes FROM history_exercises e "
            "JOIN workout_history w ON e.workout_id = w.id "
            "WHERE e.exercise_id = ? AND e.notes IS NOT NULL AND e.notes != '' "
            "ORDER BY w.end_time DESC LIMIT 1;",
            (exercise_id,),
        )
        return rows[0][0] if rows else None

    async def export_workout_csv(self, workout_id: str) -> str:
        summary = await self.fetch_detail(workout_id)
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(
            [
                "Exercise",
                "Set",
                "Weight",
                "Reps",
                "Distance",
                "Time",
                "Notes",
            ]
        )
        for ex in summary.exercises:
            for s in ex.sets:
                writer.writerow(
                    [
                        ex.name,
                        s.set_number,
                        s.weight,
                        s.reps,
                        s.distance,
                        s.time,
                        ex.notes,
                    ]
                )
        return output.getvalue()

    async def export_workout_json(self, workout_id: str) -> str:
        """Return a finished workout as a JSON string."""
        summary = await self.fetch_detail(workout_id)
        return json.dumps(summary.to_dict())


SnapshotCallback = Callable[[List[Counter]], None]


class AsyncCounterRepository(AsyncBaseRepository):
    """Counters and their per-day entry log.

    Watchers registered with :meth:`watch` receive the owner's full counter
    list after every write, acting as the authoritative snapshot feed.
    """

    _COLUMNS = "id, name, user_id, current_count, today_count, created_at, last_reset_date"

    def __init__(self, db_path: str = "workout.db") -> None:
        super().__init__(db_path)
        self._watchers: list[SnapshotCallback] = []

    @staticmethod
    def _row_to_counter(row: Tuple) -> Counter:
        cid, name, user_id, current, today, created_at, last_reset = row
        return Counter(
            name=name,
            user_id=user_id,
            id=cid,
            current_count=int(current),
            today_count=int(today),
            created_at=int(created_at),
            last_reset_date=last_reset,
        )

    def watch(self, callback: SnapshotCallback) -> Callable[[], None]:
        self._watchers.append(callback)

        def unwatch() -> None:
            if callback in self._watchers:
                self._watchers.remove(callback)

        return unwatch

    async def _notify(self, user_id: str) -> None:
        if not self._watchers:
            return
        counters = await self.fetch_counters(user_id)
        for callback in list(self._watchers):
            try:
                callback(counters)
            except Exception:
                logger.exception("counter watcher failed")

    async def fetch_counters(self, user_id: str) -> List[Counter]:
        rows = await self.fetch_all(
            f"SELECT {self._COLUMNS} FROM counters WHERE user_id = ? ORDER BY created_at, id;",
            (user_id,),
        )
        return [self._row_to_counter(r) for r in rows]

    async def fetch_counter(self, counter_id: str) -> Counter:
        rows = await self.fetch_all(
            f"SELECT {self._COLUMNS} FROM counters WHERE id = ?;",
            (counter_id,),
        )
        if not rows:
            raise ValueError("counter not found")
        return self._row_to_counter(rows[0])

    async def create_counter(self, counter: Counter) -> None:
        await self.execute(
            "INSERT INTO counters (id, user_id, name, current_count, today_count, created_at, last_reset_date) VALUES (?, ?, ?, ?, ?, ?, ?);",
            (
                counter.id,
                counter.user_id,
                counter.name,
                counter.current_count,
                counter.today_count,
                counter.created_at,
                counter.last_reset_date,
            ),
        )
        await self._notify(counter.user_id)

    async def update_counter(self, counter: Counter) -> None:
        await self.fetch_counter(counter.id)
        await self.execute(
            "UPDATE counters SET name = ?, current_count = ?, today_count = ?, last_reset_date = ? WHERE id = ?;",
            (
                counter.name,
                counter.current_count,
                counter.today_count,
                counter.last_reset_date,
                counter.id,
            ),
        )
        await self._notify(counter.user_id)

    async def delete_counter(self, counter_id: str) -> None:
        counter = await self.fetch_counter(counter_id)
        await self.execute("DELETE FROM counters WHERE id = ?;", (counter_id,))
        await self._notify(counter.user_id)

    async def apply_counter_delta(self, counter_id: str, delta: int, day: str) -> None:
        """Add ``delta`` to both totals, restarting today's total on a new day."""
        async with self._async_connection() as conn:
            cursor = await conn.execute(
                f"SELECT {self._COLUMNS} FROM counters WHERE id = ?;",
                (counter_id,),
            )
            row = await cursor.fetchone()
            if row is None:
                raise ValueError("counter not found")
            current = self._row_to_counter(row).reset_for(day)
            updated = current.with_delta(delta, day)
            await conn.execute(
                "UPDATE counters SET current_count = ?, today_count = ?, last_reset_date = ? WHERE id = ?;",
                (updated.current_count, updated.today_count, day, counter_id),
            )
            change = updated.today_count - current.today_count
            if change:
                entry = CounterEntry(counter_id=counter_id, count=change, date=day)
                await conn.execute(
                    "INSERT INTO counter_entries (id, counter_id, count, date, timestamp) VALUES (?, ?, ?, ?, ?);",
                    (entry.id, entry.counter_id, entry.count, entry.date, entry.timestamp),
                )
        await self._notify(updated.user_id)

    async def set_counter_absolute(
        self,
        counter_id: str,
        today_count: int,
        current_count: int,
        entry: CounterEntry,
    ) -> None:
        counter = await self.fetch_counter(counter_id)
        async with self._async_connection() as conn:
            await conn.execute(
                "UPDATE counters SET current_count = ?, today_count = ?, last_reset_date = ? WHERE id = ?;",
                (max(0, current_count), max(0, today_count), entry.date, counter_id),
            )
            await conn.execute(
                "INSERT INTO counter_entries (id, counter_id, count, date, timestamp) VALUES (?, ?, ?, ?, ?);",
                (entry.id, entry.counter_id, entry.count, entry.date, entry.timestamp),
            )
        await self._notify(counter.user_id)

    async def fetch_entries(self, counter_id: str) -> List[CounterEntry]:
        rows = await self.fetch_all(
            "SELECT counter_id, count, date, id, timestamp FROM counter_entries WHERE counter_id = ? ORDER BY timestamp;",
            (counter_id,),
        )
        return [CounterEntry(*row) for row in rows]

    async def fetch_counter_stats(self, counter_id: str, today: str) -> CounterStats:
        """Totals per period, computed from the entry log; weeks start on Monday."""
        counter = await self.fetch_counter(counter_id)
        day = datetime.date.fromisoformat(today)
        yesterday = (day - datetime.timedelta(days=1)).isoformat()
        week_start = (day - datetime.timedelta(days=day.weekday())).isoformat()
        month_start = day.replace(day=1).isoformat()
        year_start = day.replace(month=1, day=1).isoformat()
        rows = await self.fetch_all(
            "SELECT "
            "COALESCE(SUM(CASE WHEN date = ? THEN count END), 0), "
            "COALESCE(SUM(CASE WHEN date = ? THEN count END), 0), "
            "COALESCE(SUM(CASE WHEN date >= ? AND date <= ? THEN count END), 0), "
            "COALESCE(SUM(CASE WHEN date >= ? AND date <= ? THEN count END), 0), "
            "COALESCE(SUM(CASE WHEN date >= ? AND date <= ? THEN count END), 0) "
            "FROM counter_entries WHERE counter_id = ?;",
            (
                yesterday,
                today,
                week_start,
                today,
                month_start,
                today,
                year_start,
                today,
                counter_id,
            ),
        )
        y, t, w, m, yr = rows[0]
        return CounterStats(
            yesterday=max(0, int(y)),
            today=max(0, int(t)),
            this_week=max(0, int(w)),
            this_month=max(0, int(m)),
            this_year=max(0, int(yr)),
            all_time=counter.current_count,
        )


class SessionStateRepository(BaseRepository):
    """Stores the JSON snapshot of the in-progress workout."""

    def save(self, state: WorkoutSessionState) -> None:
        self.execute(
            "INSERT INTO session_state (id, data, updated_at) VALUES (1, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET data=excluded.data, updated_at=excluded.updated_at;",
            (json.dumps(state.to_dict()), datetime.datetime.now().isoformat()),
        )

    def load(self) -> Optional[WorkoutSessionState]:
        rows = self.fetch_all("SELECT data FROM session_state WHERE id = 1;")
        if not rows:
            return None
        return WorkoutSessionState.from_dict(json.loads(rows[0][0]))

    def clear(self) -> None:
        self._delete_all("session_state")
