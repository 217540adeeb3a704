"""Adapters for external agent sessions: processes, registry, status, payloads."""

from slotkeeper.agents.payload import PayloadBuilder, TemplatePayloadBuilder
from slotkeeper.agents.process import (
    ProcessHandle,
    ProcessLauncher,
    SignalKind,
    SubprocessLauncher,
)
from slotkeeper.agents.registry import SessionRecord, SessionRegistry
from slotkeeper.agents.status import (
    ExternalSessionStatus,
    HttpSessionStatusSource,
    SessionStatusSource,
)

__all__ = [
    "PayloadBuilder",
    "TemplatePayloadBuilder",
    "ProcessHandle",
    "ProcessLauncher",
    "SignalKind",
    "SubprocessLauncher",
    "SessionRecord",
    "SessionRegistry",
    "ExternalSessionStatus",
    "HttpSessionStatusSource",
    "SessionStatusSource",
]
