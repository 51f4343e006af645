"""
Common utility functions for classbank.

This module provides reusable helper functions for:
- Date/time formatting (ISO-8601 with UTC)
- Money formatting for JSON responses
- Deployment settings lookup with constant fallbacks
- Tenant-local calendar dates
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytz
from flask import current_app, has_app_context


def format_utc_iso(dt):
    """Return a UTC ISO-8601 string (with trailing Z) for a datetime or None."""
    if not dt:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


def as_utc(dt):
    """Treat naive datetimes read back from the database as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def money(value):
    """Render a Decimal balance as a JSON number (int when whole)."""
    if value is None:
        return 0
    value = Decimal(value)
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def get_setting(name, default):
    """Return ``current_app.config[name]`` when configured, else ``default``."""
    if not has_app_context():
        return default
    value = current_app.config.get(name)
    return default if value is None else value


def tenant_today(teacher=None, now=None):
    """Return today's date in the teacher's timezone."""
    tz_name = getattr(teacher, 'timezone', None) or get_setting('DEFAULT_TIMEZONE', 'Asia/Seoul')
    try:
        tz = pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        current_app.logger.warning(f"Invalid timezone '{tz_name}' for teacher, defaulting to UTC.")
        tz = pytz.utc
    now = now or datetime.now(timezone.utc)
    return as_utc(now).astimezone(tz).date()
