"""Attendance verification: cooldown guard, geofence, evidence and event log."""
