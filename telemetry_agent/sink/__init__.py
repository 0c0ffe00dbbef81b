"""Remote sink clients.

Provides ``RemoteSink`` ABC with two concrete implementations:

* ``HTTPSink``     -- POSTs batches to the ingest service over httpx.
* ``InMemorySink`` -- idempotent in-process store (tests, dry-run).
"""

from telemetry_agent.sink.base import ApplyResult, RemoteSink

__all__ = ["ApplyResult", "RemoteSink"]
