"""Payment audit trail.

The pipeline only depends on the ``AuditSink`` protocol. The default sink
writes one JSON document per entry to the ``paygate.audit`` logger, where
any log shipper can pick it up.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

audit_logger = logging.getLogger("paygate.audit")

AUDIT_NODE = "payment_gateway"

# Used where an event has no customer to attribute to (disputes)
SYSTEM_ACTOR = "SYSTEM"


@dataclass(frozen=True)
class AuditEntry:
    provider: str
    event: str
    email: str
    amount: str | int | None = None
    severity: str = "info"  # info, warning, critical
    metadata: dict[str, Any] = field(default_factory=dict)
    entry_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    ts: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ts": datetime.fromtimestamp(self.ts, tz=timezone.utc).isoformat(),
            "provider": self.provider,
            "event": self.event,
            "email": self.email,
            "amount": self.amount,
            "severity": self.severity,
            "entry_id": self.entry_id,
            "node": AUDIT_NODE,
            **({"metadata": self.metadata} if self.metadata else {}),
        }


@runtime_checkable
class AuditSink(Protocol):
    async def emit(self, entry: AuditEntry) -> None: ...


class LoggingAuditSink:
    """Writes audit entries as JSON lines; critical entries log at WARNING."""

    async def emit(self, entry: AuditEntry) -> None:
        level = logging.WARNING if entry.severity == "critical" else logging.INFO
        audit_logger.log(level, json.dumps(entry.to_dict(), default=str))


class MemoryAuditSink:
    """Collects entries in a list."""

    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    async def emit(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    def events(self) -> list[str]:
        return [e.event for e in self.entries]
