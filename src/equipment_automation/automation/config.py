"""
Engine configuration.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ValidationError

THRESHOLD_MODES = ("edge", "level")


@dataclass
class EngineConfig:
    """Runtime settings for the automation engine."""

    version: int = 1
    tick_interval_seconds: float = 30.0  # Polling interval for schedules
    timezone: str = "UTC"  # Zone in which schedule times are read
    schedule_grace_minutes: int = 5  # How far back a tick looks for missed slots
    threshold_mode: str = "edge"  # "edge" = once per crossing, "level" = every reading
    threshold_cooldown_seconds: float = 60.0  # Level mode only
    disable_once_after_fire: bool = True
    history_size: int = 100  # Run logs kept per automation
    max_workers: int = 4  # 0 = run everything on the calling thread

    def __post_init__(self) -> None:
        if self.threshold_mode not in THRESHOLD_MODES:
            raise ValidationError(
                f"threshold_mode must be one of {', '.join(THRESHOLD_MODES)}",
                {"field": "threshold_mode", "value": self.threshold_mode},
            )
        if self.tick_interval_seconds <= 0:
            raise ValidationError(
                "tick_interval_seconds must be positive", {"field": "tick_interval_seconds"}
            )
        if self.schedule_grace_minutes < 0 or self.max_workers < 0:
            raise ValidationError("Config values must not be negative")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValidationError(f"Unknown timezone: {self.timezone}", {"field": "timezone"})

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """Deserialize from dict, ignoring unknown keys."""
        defaults = cls()
        return cls(
            version=data.get("version", defaults.version),
            tick_interval_seconds=float(
                data.get("tick_interval_seconds", defaults.tick_interval_seconds)
            ),
            timezone=data.get("timezone", defaults.timezone),
            schedule_grace_minutes=int(
                data.get("schedule_grace_minutes", defaults.schedule_grace_minutes)
            ),
            threshold_mode=data.get("threshold_mode", defaults.threshold_mode),
            threshold_cooldown_seconds=float(
                data.get("threshold_cooldown_seconds", defaults.threshold_cooldown_seconds)
            ),
            disable_once_after_fire=bool(
                data.get("disable_once_after_fire", defaults.disable_once_after_fire)
            ),
            history_size=int(data.get("history_size", defaults.history_size)),
            max_workers=int(data.get("max_workers", defaults.max_workers)),
        )
