"""Slotkeeper - worker slot orchestration for long-running agent sessions.

This package runs a fleet of named worker slots that poll a shared task
queue, delegate claimed work to externally spawned agent processes, and
report liveness through heartbeats watched by an independent watchdog.
"""

__version__ = "0.1.0"
