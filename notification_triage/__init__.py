"""Notification triage: NOW / LATER / NEVER for every notification event."""

__version__ = "1.0.0"
