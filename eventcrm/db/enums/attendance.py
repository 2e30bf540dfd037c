"""Attendance-related enums."""

from enum import Enum


class AttendanceStatus(str, Enum):
    """Lifecycle of a ticket: registered -> checked_in (undo reverses it)."""

    REGISTERED = "registered"
    CHECKED_IN = "checked_in"
    CANCELLED = "cancelled"
