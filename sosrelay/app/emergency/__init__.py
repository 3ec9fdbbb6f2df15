"""
emergency — The SOS record and the backend-of-record registry.

Sub-modules:
    models    — EmergencyRecord, status lifecycle, id / timestamp helpers
    registry  — authoritative in-memory store behind the REST API
"""
