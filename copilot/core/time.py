"""Time utilities."""
from datetime import datetime, timedelta, timezone


def _to_iso(moment: datetime) -> str:
    # Fixed precision so stored timestamps compare lexicographically
    return moment.isoformat(timespec="microseconds").replace('+00:00', 'Z')


def now_iso() -> str:
    """Get current time as ISO 8601 string with Z suffix."""
    return _to_iso(datetime.now(timezone.utc))


def seconds_ago_iso(seconds: float) -> str:
    """ISO 8601 timestamp for `seconds` before now."""
    return _to_iso(datetime.now(timezone.utc) - timedelta(seconds=max(0.0, float(seconds))))
