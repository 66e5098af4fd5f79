"""
Per-organization sending policy: daily cap, sending window and cadence.

Days use 0=Sunday ... 6=Saturday. ``daily_schedules`` optionally overrides
the window (or disables sending) for individual weekdays.
"""

import logging
import re
from dataclasses import asdict, dataclass, field, fields
from typing import Dict, List, Optional

import pytz

import config
from campaign_engine.errors import ValidationError
from database import ScheduleConfigRecord

logger = logging.getLogger("campaigns.schedule_config")

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def parse_hhmm(value: str) -> int:
    """'09:30' -> minutes from midnight"""
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


@dataclass
class ScheduleConfig:
    daily_limit: int = config.DEFAULT_DAILY_LIMIT
    min_gap_minutes: int = config.DEFAULT_MIN_GAP_MINUTES
    max_gap_minutes: int = config.DEFAULT_MAX_GAP_MINUTES
    timezone: str = config.DEFAULT_TIMEZONE
    allowed_days: List[int] = field(default_factory=lambda: list(config.DEFAULT_ALLOWED_DAYS))
    allowed_start_time: str = config.DEFAULT_START_TIME
    allowed_end_time: str = config.DEFAULT_END_TIME
    daily_schedules: Optional[Dict[str, Dict]] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "ScheduleConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})

    def to_dict(self) -> Dict:
        return asdict(self)

    def merged(self, patch: Optional[Dict]) -> "ScheduleConfig":
        data = self.to_dict()
        for key, value in (patch or {}).items():
            if key in data and value is not None:
                data[key] = value
        return ScheduleConfig.from_dict(data)

    @property
    def tz(self):
        return pytz.timezone(self.timezone)

    def window_for(self, dow: int):
        """
        Sending window for a weekday as ``(start_minute, end_minute)``, or
        None when nothing may be sent that day.
        """
        override = (self.daily_schedules or {}).get(str(dow))
        if override is not None:
            if not override.get("enabled", True):
                return None
            return parse_hhmm(override["start_time"]), parse_hhmm(override["end_time"])
        if dow not in self.allowed_days:
            return None
        return parse_hhmm(self.allowed_start_time), parse_hhmm(self.allowed_end_time)

    def validate(self) -> "ScheduleConfig":
        if not isinstance(self.daily_limit, int) or not 1 <= self.daily_limit <= config.MAX_DAILY_LIMIT:
            raise ValidationError(f"daily_limit must be between 1 and {config.MAX_DAILY_LIMIT}")
        if self.min_gap_minutes < 0:
            raise ValidationError("min_gap_minutes must be >= 0")
        if self.max_gap_minutes < self.min_gap_minutes:
            raise ValidationError("max_gap_minutes must be >= min_gap_minutes")
        if self.timezone not in pytz.all_timezones_set:
            raise ValidationError(f"unknown timezone: {self.timezone}")
        if not self.allowed_days:
            raise ValidationError("allowed_days must not be empty")
        if any(not isinstance(d, int) or d < 0 or d > 6 for d in self.allowed_days):
            raise ValidationError("allowed_days must be integers 0 (Sunday) to 6 (Saturday)")
        _check_window(self.allowed_start_time, self.allowed_end_time, "allowed")

        if self.daily_schedules:
            normalized = {}
            for dow, day in self.daily_schedules.items():
                try:
                    dow_int = int(dow)
                except (TypeError, ValueError):
                    raise ValidationError(f"daily_schedules key {dow!r} is not a weekday number")
                if not 0 <= dow_int <= 6:
                    raise ValidationError(f"daily_schedules key {dow!r} is out of range")
                day = {
                    "start_time": day.get("start_time", self.allowed_start_time),
                    "end_time": day.get("end_time", self.allowed_end_time),
                    "enabled": bool(day.get("enabled", True)),
                }
                _check_window(day["start_time"], day["end_time"], f"daily_schedules[{dow_int}]")
                normalized[str(dow_int)] = day
            self.daily_schedules = normalized

        if not any(self.window_for(d) for d in range(7)):
            raise ValidationError("schedule leaves no day open for sending")
        return self


def _check_window(start: str, end: str, label: str):
    if not isinstance(start, str) or not TIME_PATTERN.match(start):
        raise ValidationError(f"{label} start time must be HH:MM")
    if not isinstance(end, str) or not TIME_PATTERN.match(end):
        raise ValidationError(f"{label} end time must be HH:MM")
    if parse_hhmm(end) <= parse_hhmm(start):
        raise ValidationError(f"{label} end time must be after start time")


class ScheduleConfigStore:
    def get(self, organization_id: str) -> ScheduleConfig:
        record = ScheduleConfigRecord.get(organization_id)
        return ScheduleConfig.from_dict(record)

    def effective(self, organization_id: str, session_override: Optional[Dict] = None) -> ScheduleConfig:
        """
        Organization policy with a campaign's own overrides applied on top.
        An override may lower the daily limit but never raise it past the
        organization's, since every session draws on the same per-day count.
        """
        cfg = self.get(organization_id)
        if session_override:
            org_limit = cfg.daily_limit
            cfg = cfg.merged(session_override).validate()
            cfg.daily_limit = min(cfg.daily_limit, org_limit)
        return cfg

    def update(self, organization_id: str, patch: Dict) -> ScheduleConfig:
        unknown = set(patch) - {f.name for f in fields(ScheduleConfig)}
        if unknown:
            raise ValidationError(f"unknown schedule fields: {', '.join(sorted(unknown))}")

        cfg = self.get(organization_id).merged(patch).validate()
        ScheduleConfigRecord.upsert(organization_id, cfg.to_dict())
        logger.info(
            "schedule_config_updated",
            extra={"organization_id": organization_id, "fields": sorted(patch)},
        )
        return cfg
