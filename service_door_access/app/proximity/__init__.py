"""
Proximity gate for beacon-equipped doors.
"""
