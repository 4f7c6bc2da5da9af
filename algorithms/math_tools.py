from typing import Iterable, Optional


class MathTools:
    """Provides essential mathematical utilities for workout calculations."""

    @staticmethod
    def non_negative(value: float) -> float:
        """Clamp ``value`` at zero from below."""
        return value if value > 0 else 0

    @staticmethod
    def volume(sets: Iterable[tuple[int, float]]) -> float:
        """Compute training volume as the sum of reps times weight."""
        vol = 0.0
        for reps, weight in sets:
            vol += reps * weight
        return vol

    @staticmethod
    def set_score(
        kind: str,
        weight: float = 0.0,
        reps: int = 0,
        distance: float = 0.0,
        time: float = 0.0,
    ) -> float:
        """Score a set for record comparison.

        ``kind`` is one of ``weight`` (weight x reps), ``distance``, ``time``
        or ``reps``.
        """
        if kind == "weight":
            return float(weight) * int(reps)
        if kind == "distance":
            return float(distance)
        if kind == "time":
            return float(time)
        if kind == "reps":
            return float(reps)
        raise ValueError(f"unknown score kind: {kind}")

    @staticmethod
    def is_personal_record(score: float, best: Optional[float]) -> bool:
        """Return True when ``score`` exceeds a known historical ``best``."""
        if best is None or score <= 0:
            return False
        return score > best

    @staticmethod
    def best_score(
        kind: str,
        best_weight: Optional[float] = None,
        best_reps: Optional[int] = None,
        best_distance: Optional[float] = None,
        best_time: Optional[float] = None,
    ) -> Optional[float]:
        """Score the historical best of a set, or None when there is none."""
        if kind == "weight":
            if best_weight is None or best_reps is None:
                return None
            return MathTools.set_score(kind, weight=best_weight, reps=best_reps)
        value = {"distance": best_distance, "time": best_time, "reps": best_reps}.get(kind)
        if value is None:
            return None
        return float(value)
