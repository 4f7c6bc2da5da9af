from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError


class SettingsSchema(BaseModel):
    weight_unit: Literal["kg", "lb"] = "kg"
    counter_debounce_ms: int = Field(300, ge=0)
    counter_settle_ms: int = Field(100, ge=0)
    counter_sync_timeout: Optional[float] = Field(15.0, gt=0)
    finish_timeout: Optional[float] = Field(30.0, gt=0)
    rest_tick_seconds: float = Field(1.0, gt=0)
    rest_warning_ticks: int = Field(3, ge=0)
    default_rest_seconds: int = Field(90, ge=0)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


def validate_settings(data: dict) -> SettingsSchema:
    try:
        return SettingsSchema(**data)
    except ValidationError as e:
        raise ValueError(str(e))
