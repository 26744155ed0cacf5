"""Background loop for the weekly catalog sync and scheduled backups."""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, time as dt_time, timedelta
from pathlib import Path
from typing import List, Optional

from config import INSTANCE_DIR
from services import backup as backup_service
from services.catalog_sync import get_sync_service

_LOG = logging.getLogger("scheduler")

_WEEKDAY_ALIASES = {
    "mon": 0,
    "monday": 0,
    "tue": 1,
    "tues": 1,
    "tuesday": 1,
    "wed": 2,
    "wednesday": 2,
    "thu": 3,
    "thur": 3,
    "thurs": 3,
    "thursday": 3,
    "fri": 4,
    "friday": 4,
    "sat": 5,
    "saturday": 5,
    "sun": 6,
    "sunday": 6,
}

_BACKUP_INTERVALS = {"daily": timedelta(days=1), "weekly": timedelta(days=7)}


def _parse_weekday(raw: str | None, default: int = 6) -> int:
    """Accept names or cron-style numbers (0 and 7 are Sunday)."""
    if not raw:
        return default
    token = str(raw).strip().lower()
    if token.isdigit():
        value = int(token)
        if value == 7:
            value = 0
        if 0 <= value <= 6:
            return (value - 1) % 7
    return _WEEKDAY_ALIASES.get(token, default)


def state_path() -> Path:
    return INSTANCE_DIR / "scheduler_state.json"


def _load_state(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        _LOG.warning("Scheduler state at %s unreadable; starting fresh.", path)
        return {}


def _save_state(path: Path, state: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(state, indent=2, sort_keys=True), encoding="utf-8")


def _parse_dt(raw: str | None) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


def _most_recent_schedule(now: datetime, target_weekday: int, hour: int, minute: int = 0) -> datetime:
    days_since = (now.weekday() - target_weekday) % 7
    scheduled = datetime.combine(now.date() - timedelta(days=days_since), dt_time(hour, minute))
    if scheduled > now:
        scheduled -= timedelta(days=7)
    return scheduled


def _should_sync(now: datetime, last_run: Optional[datetime], target_weekday: int, hour: int) -> bool:
    scheduled = _most_recent_schedule(now, target_weekday, hour)
    if not last_run:
        return True
    return last_run < scheduled


def _should_backup(now: datetime, last_run: Optional[datetime], config: dict) -> bool:
    if not config.get("enabled"):
        return False
    if not last_run:
        return True
    interval = _BACKUP_INTERVALS.get(config.get("frequency"), _BACKUP_INTERVALS["daily"])
    return now - last_run >= interval


def _safe_call(label: str, func, *args, **kwargs) -> bool:
    try:
        func(*args, **kwargs)
    except Exception as exc:
        _LOG.error("%s failed: %s", label, exc, exc_info=True)
        return False
    return True


def run_pending(app, now: Optional[datetime] = None, path: Optional[Path] = None) -> List[str]:
    """Run every job that is due and return the labels that ran."""
    now = now or datetime.utcnow()
    path = path or state_path()
    state = _load_state(path)
    ran: List[str] = []

    weekday = _parse_weekday(app.config.get("SYNC_WEEKDAY"), default=6)
    hour = int(app.config.get("SYNC_HOUR", 3))

    with app.app_context():
        if app.config.get("CATALOG_SOURCE") and _should_sync(now, _parse_dt(state.get("last_sync_at")), weekday, hour):
            _LOG.info("Running weekly catalog sync (scheduled for %s).", _most_recent_schedule(now, weekday, hour).isoformat())
            if _safe_call("Catalog sync", get_sync_service().run):
                state["last_sync_at"] = now.isoformat()
                ran.append("sync")

        config = backup_service.get_backup_config()
        if _should_backup(now, _parse_dt(state.get("last_backup_at")), config):
            if _safe_call("Scheduled backup", backup_service.run_scheduled_backup):
                state["last_backup_at"] = now.isoformat()
                ran.append("backup")

    if ran:
        _save_state(path, state)
    return ran


def run_forever(app) -> None:
    if app.config.get("DISABLE_BACKGROUND_JOBS"):
        _LOG.info("Background jobs disabled (DISABLE_BACKGROUND_JOBS=1). Exiting.")
        return
    interval = max(15, int(app.config.get("SCHEDULER_POLL_SECONDS", 60)))
    _LOG.info(
        "Scheduler active (sync weekday=%s hour=%02d, poll=%ss).",
        app.config.get("SYNC_WEEKDAY"),
        int(app.config.get("SYNC_HOUR", 3)),
        interval,
    )
    while True:
        run_pending(app)
        time.sleep(interval)


__all__ = ["run_pending", "run_forever", "state_path"]
