"""Recurring schedules: recurrence, status, engine and export/import."""
