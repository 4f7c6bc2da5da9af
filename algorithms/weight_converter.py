class WeightConverter:
    """Utility for converting between kg and lb."""

    KG_TO_LB = 2.20462
    UNITS = ("kg", "lb")

    @staticmethod
    def kg_to_lb(kg: float) -> float:
        return round(kg * WeightConverter.KG_TO_LB, 2)

    @staticmethod
    def lb_to_kg(lb: float) -> float:
        return round(lb / WeightConverter.KG_TO_LB, 2)

    @classmethod
    def from_kg(cls, kg: float, unit: str) -> float:
        """Express a kilogram amount (weight or volume) in ``unit``."""
        if unit not in cls.UNITS:
            raise ValueError(f"unknown weight unit: {unit}")
        return cls.kg_to_lb(kg) if unit == "lb" else round(kg, 2)
