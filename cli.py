import argparse
import asyncio
import logging
import os
import shutil

from algorithms import WeightConverter
from config import configure_logging
from db import AsyncCounterRepository, AsyncWorkoutHistoryRepository
from models import day_string

logger = logging.getLogger(__name__)


def list_history(db_path: str, limit: int | None = None) -> list[str]:
    history = AsyncWorkoutHistoryRepository(db_path)
    rows = asyncio.run(history.fetch_history(limit=limit))
    return [
        f"{wid}  {start[:16]}  {name}  sets={total_sets}  volume={volume:g}"
        for wid, name, _routine, start, _end, _duration, total_sets, volume in rows
    ]


def export_workouts(db_path: str, fmt: str, output_dir: str = ".") -> list[str]:
    history = AsyncWorkoutHistoryRepository(db_path)

    async def run() -> list[str]:
        written = []
        for wid, *_ in await history.fetch_history(descending=False):
            if fmt == "csv":
                data = await history.export_workout_csv(wid)
            else:
                data = await history.export_workout_json(wid)
            out_path = os.path.join(output_dir, f"workout_{wid}.{fmt}")
            with open(out_path, "w", encoding="utf-8") as f:
                f.write(data)
            written.append(out_path)
        return written

    paths = asyncio.run(run())
    logger.info("exported %d workouts to %s", len(paths), output_dir)
    return paths


def backup_db(db_path: str, backup_path: str) -> None:
    shutil.copy(db_path, backup_path)


def restore_db(backup_path: str, db_path: str) -> None:
    shutil.copy(backup_path, db_path)


def list_counters(db_path: str, user_id: str) -> list[str]:
    repo = AsyncCounterRepository(db_path)
    counters = asyncio.run(repo.fetch_counters(user_id))
    today = day_string()
    lines = []
    for counter in counters:
        current = counter.reset_for(today)
        lines.append(f"{current.name}: today={current.today_count} total={current.current_count}")
    return lines


def convert(weight: float, unit: str) -> str:
    if unit == "kg":
        return f"{weight} kg = {WeightConverter.kg_to_lb(weight)} lb"
    return f"{weight} lb = {WeightConverter.lb_to_kg(weight)} kg"


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Utility commands")
    parser.add_argument("--verbose", action="store_true", help="enable debug logging")
    sub = parser.add_subparsers(dest="cmd", required=True)

    hist = sub.add_parser("history")
    hist.add_argument("--db", default="workout.db")
    hist.add_argument("--limit", type=int, default=None)

    exp = sub.add_parser("export")
    exp.add_argument("--db", default="workout.db")
    exp.add_argument("--fmt", choices=["csv", "json"], default="csv")
    exp.add_argument("--out", default=".")

    bkp = sub.add_parser("backup")
    bkp.add_argument("--db", default="workout.db")
    bkp.add_argument("--out", default="backup.db")

    rst = sub.add_parser("restore")
    rst.add_argument("--in", dest="src", default="backup.db")
    rst.add_argument("--db", default="workout.db")

    cnt = sub.add_parser("counters")
    cnt.add_argument("--db", default="workout.db")
    cnt.add_argument("--user", default="local")

    conv = sub.add_parser("convert")
    conv.add_argument("--weight", type=float, required=True)
    conv.add_argument("--unit", choices=["kg", "lb"], required=True)

    args = parser.parse_args(argv)
    configure_logging("DEBUG" if args.verbose else "WARNING")

    if args.cmd == "history":
        for line in list_history(args.db, args.limit):
            print(line)
    elif args.cmd == "export":
        export_workouts(args.db, args.fmt, args.out)
    elif args.cmd == "backup":
        backup_db(args.db, args.out)
    elif args.cmd == "restore":
        restore_db(args.src, args.db)
    elif args.cmd == "counters":
        for line in list_counters(args.db, args.user):
            print(line)
    elif args.cmd == "convert":
        print(convert(args.weight, args.unit))


if __name__ == "__main__":
    main()
