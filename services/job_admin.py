"""
Job Admin Service
Operator-facing control of the background job manager

Responses are plain dicts ready for whatever transport exposes them.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Mapping

from config import format_duration, parse_duration
from jobs.background_job_manager import (
    BackgroundJobManager,
    InvalidJobConfigError,
    JobKind,
    UnknownJobError,
)

logger = logging.getLogger(__name__)

_INTERVAL_FIELDS = ("rating_reminder_interval", "auto_release_interval", "dispute_escalation_interval")
_INT_FIELDS = ("rating_deadline_days", "dispute_escalation_hours")
_FLOAT_FIELDS = ("min_rating_for_auto_release",)

HTTP_OK = 200
HTTP_SERVICE_UNAVAILABLE = 503


def _parse_interval(name: str, value: Any) -> timedelta:
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise InvalidJobConfigError(f"{name} must be a duration, got {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    try:
        return parse_duration(str(value))
    except ValueError as e:
        raise InvalidJobConfigError(f"{name}: {e}") from e


def _parse_number(name: str, value: Any, kind):
    if isinstance(value, bool):
        raise InvalidJobConfigError(f"{name} must be a number, got {value!r}")
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise InvalidJobConfigError(f"{name} must be a number, got {value!r}") from e


class JobAdminService:
    """Admin facade over one BackgroundJobManager"""

    def __init__(self, manager: BackgroundJobManager):
        self.manager = manager

    def trigger(self, job_name: str) -> Dict[str, Any]:
        kind = JobKind.from_name(job_name)
        self.manager.trigger(kind)
        return {
            "success": True,
            "job": kind.value.replace("_", "-"),
            "message": f"{kind.display_name} job triggered",
        }

    def get_config(self) -> Dict[str, Any]:
        config = self.manager.get_config()
        data = config.to_dict()
        for name in _INTERVAL_FIELDS:
            data[name] = format_duration(getattr(config, name))
        return data

    def update_config(self, changes: Mapping[str, Any]) -> Dict[str, Any]:
        """Apply a partial update as a whole new configuration"""
        parsed: Dict[str, Any] = {}
        for name, value in changes.items():
            if name in _INTERVAL_FIELDS:
                parsed[name] = _parse_interval(name, value)
            elif name in _INT_FIELDS:
                parsed[name] = _parse_number(name, value, int)
            elif name in _FLOAT_FIELDS:
                parsed[name] = _parse_number(name, value, float)
            else:
                raise InvalidJobConfigError(f"Unknown configuration field: {name}")

        current = self.manager.get_config()
        updated = current.replace(**parsed)
        self.manager.update_config(updated)
        logger.info(f"🔧 Admin updated job configuration: {sorted(parsed)}")
        return self.get_config()

    def statuses(self) -> Dict[str, Dict[str, Any]]:
        return {name: status.to_dict() for name, status in self.manager.get_job_statuses().items()}

    def health(self) -> Dict[str, Any]:
        health = self.manager.get_job_health()
        response = health.to_dict()
        response["status_code"] = HTTP_OK if health.healthy else HTTP_SERVICE_UNAVAILABLE
        return response


__all__ = ["JobAdminService", "UnknownJobError", "InvalidJobConfigError"]
