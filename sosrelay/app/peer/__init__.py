"""
peer — Infrastructure-free relay of SOS alerts between nearby devices.

Sub-modules:
    codec      — tagged, versioned wire envelope (bytes ⇄ EmergencyRecord)
    transport  — contract a short-range radio must fulfil
    simulated  — in-process radio used by tests and local simulation
    channel    — advertise / scan / connect / fallback pass
"""
