"""Ingest API -- reference remote store for the telemetry agent.

Accepts sample batches and applies each sample idempotently keyed by
``(device_id, sample_id)``: re-applying a known sample is a no-op that
is still reported as applied.
"""

__version__ = "0.1.0"
