"""Telemetry Agent -- store-and-forward telemetry buffer for edge devices.

Durably queues time-stamped samples in a local SQLite file and flushes
them in batches to a remote time-series store once the link allows.
Delivery is at-least-once; the remote store applies each sample
idempotently keyed by ``(device_id, sample_id)``.
"""

__version__ = "0.1.0"
