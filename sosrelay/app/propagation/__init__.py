"""
propagation — Device-side convergence of SOS alerts.

Sub-modules:
    cache     — Local Durable Cache (bounded, newest first, restartable)
    dedup     — Merge engine: the single inbound merge point, at most one
                notification per alert id
    notifier  — Local notification dispatcher (permission-aware)
    client    — HTTP client for the backend of record
    poller    — Authoritative sync poller (push, pull, checkpoint, outbox)

The peer relay channel lives in ``sosrelay.app.peer`` and feeds the same
merge engine as the poller.
"""
