"""
Append-Only, Tamper-Evident Audit Log (Hash-Chained).

Every mutation made by the ledgers -- invites, accepts, declines, care
links, survey dispatch and completion, session scheduling and call state
changes -- is recorded as a structured, append-only audit entry.  Entries
are linked via a SHA-256 hash chain: if any entry is modified after the
fact, ``verify_chain()`` detects the inconsistency.

Audit metadata routinely contains invite e-mail addresses and phone
numbers, so ``export_for_review()`` applies ``redact_phi_from_metadata()``
before producing an export bundle.
"""

from __future__ import annotations

import enum
import hashlib
import json
import re
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Audit event types
# ---------------------------------------------------------------------------

class AuditEventType(str, enum.Enum):
    """Every auditable action in the coordination core."""

    # Connection Ledger
    CONNECTION_INVITE_SENT = "CONNECTION_INVITE_SENT"
    CONNECTION_INVITE_RESENT = "CONNECTION_INVITE_RESENT"
    CONNECTION_ACCEPTED = "CONNECTION_ACCEPTED"
    CONNECTION_DECLINED = "CONNECTION_DECLINED"
    CONNECTION_CANCELLED = "CONNECTION_CANCELLED"
    CONNECTION_EXPIRED = "CONNECTION_EXPIRED"

    # Care-Link Ledger
    LINK_TOKEN_ISSUED = "LINK_TOKEN_ISSUED"
    PATIENT_LINKED_TO_DOCTOR = "PATIENT_LINKED_TO_DOCTOR"

    # Survey Orchestrator
    SURVEY_CREATED = "SURVEY_CREATED"
    SURVEY_SENT = "SURVEY_SENT"
    SURVEY_COMPLETED = "SURVEY_COMPLETED"

    # Engagement Scheduler / Call Session Monitor
    CALL_SCHEDULED = "CALL_SCHEDULED"
    CALL_CANCELLED = "CALL_CANCELLED"
    CALL_INITIATED = "CALL_INITIATED"
    CALL_CONNECTED = "CALL_CONNECTED"
    CALL_ENDED = "CALL_ENDED"
    CALL_ARTIFACTS_ATTACHED = "CALL_ARTIFACTS_ATTACHED"

    # Side-effect failures
    NOTIFICATION_FAILED = "NOTIFICATION_FAILED"
    CONFERENCING_FAILED = "CONFERENCING_FAILED"

    # Audit operations
    AUDIT_EXPORTED = "AUDIT_EXPORTED"


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """A single audit log entry.

    Records who did what, when, to which entity, and includes a hash link
    to the previous entry for tamper evidence.
    """

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    actor_id: str = Field(
        ...,
        description="User id of the actor, or SYSTEM for provider callbacks and sweeps.",
    )
    actor_role: str = Field(
        ...,
        description="PATIENT, DOCTOR or SYSTEM.",
    )
    event_type: AuditEventType
    target_entity: str = Field(
        default="",
        description="Identifier of the affected record (request, link, survey or session id).",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str = Field(
        default="",
        description=(
            "SHA-256 hash of the previous entry's canonical representation. "
            "Empty string for the first entry in the chain."
        ),
    )

    def canonical_bytes(self) -> bytes:
        """Sorted-key JSON of every field; the input to ``compute_hash()``."""
        return json.dumps(
            self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"), default=str
        ).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# PHI redaction patterns
# ---------------------------------------------------------------------------

PHI_PATTERNS: dict[str, re.Pattern] = {
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "phone": re.compile(r"\+?\d{0,3}[-. ]?\b\d{3}[-. ]?\d{3}[-. ]?\d{4}\b"),
}

# Keys whose values are dropped outright on export.
_PHI_KEYS = {"name", "full_name", "email", "target_email", "phone", "phone_number",
             "transcript", "summary", "response_data", "address"}


def redact_text(value: str) -> str:
    """Replace e-mail addresses and phone numbers in a string."""
    for pattern_name, pattern in PHI_PATTERNS.items():
        value = pattern.sub(f"[REDACTED-{pattern_name.upper()}]", value)
    return value


def _redact_value(key: str, value: Any) -> Any:
    if key.lower() in _PHI_KEYS:
        return "[REDACTED]"
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return redact_phi_from_metadata(value)
    if isinstance(value, list):
        return [_redact_value("", item) for item in value]
    return value


def redact_phi_from_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``metadata`` that is safe to hand to a reviewer.

    Known sensitive keys are replaced wholesale with ``[REDACTED]``; e-mail
    addresses and phone numbers inside any other string, nested mapping or
    list are masked.
    """
    return {key: _redact_value(key, value) for key, value in metadata.items()}


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only, tamper-evident audit log with SHA-256 hash chaining.

    There is no ``update()`` or ``delete()``.  Ledgers append from
    concurrent callers, so linking an entry to its predecessor's hash
    happens under a lock.  ``verify_chain()`` recomputes every hash and
    ``export_for_review()`` redacts PHI.
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._hashes: list[str] = []  # hash of each entry as appended
        self._lock = threading.Lock()

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Append a new entry, linking it to the previous entry's hash."""
        with self._lock:
            entry.previous_hash = self._hashes[-1] if self._hashes else ""
            self._entries.append(entry)
            self._hashes.append(entry.compute_hash())
        return entry

    def record(
        self,
        event_type: AuditEventType,
        actor_id: str,
        actor_role: str,
        target_entity: str = "",
        metadata: dict[str, Any] | None = None,
        timestamp: Optional[datetime] = None,
    ) -> AuditEntry:
        """Build and append an entry in one call.

        Ledgers pass ``timestamp`` from their own clock so that entries and
        the records they describe share one time source.
        """
        return self.append(AuditEntry(
            actor_id=actor_id,
            actor_role=actor_role,
            event_type=event_type,
            target_entity=target_entity,
            metadata=metadata or {},
            timestamp=timestamp or datetime.now(timezone.utc),
        ))

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Recompute every hash and check each entry points at its predecessor.

        Returns:
            ``(valid, broken_at)`` where ``broken_at`` is the index of the
            first entry that fails, or None if the chain is intact.
        """
        with self._lock:
            pairs = list(zip(self._entries, self._hashes))
        previous = ""
        for index, (entry, appended_hash) in enumerate(pairs):
            if entry.previous_hash != previous or entry.compute_hash() != appended_hash:
                return (False, index)
            previous = appended_hash
        return (True, None)

    def query(
        self,
        event_type: Optional[AuditEventType] = None,
        target_entity: Optional[str] = None,
        actor_id: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> list[AuditEntry]:
        """Return copies of the entries matching every given filter."""

        def matches(entry: AuditEntry) -> bool:
            return (
                (event_type is None or entry.event_type == event_type)
                and (target_entity is None or entry.target_entity == target_entity)
                and (actor_id is None or entry.actor_id == actor_id)
                and (time_start is None or entry.timestamp >= time_start)
                and (time_end is None or entry.timestamp <= time_end)
            )

        with self._lock:
            entries = list(self._entries)
        return [entry.model_copy(deep=True) for entry in entries if matches(entry)]

    def export_for_review(
        self,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
        event_types: Optional[set[AuditEventType]] = None,
    ) -> dict[str, Any]:
        """Produce a JSON-serializable, PHI-redacted export bundle.

        Args:
            time_start: Earliest entry timestamp to include.
            time_end: Latest entry timestamp to include.
            event_types: Restrict the export to these event types.
        """
        entries = [
            entry for entry in self.query(time_start=time_start, time_end=time_end)
            if event_types is None or entry.event_type in event_types
        ]
        exported = [
            {**entry.model_dump(mode="json"),
             "metadata": redact_phi_from_metadata(entry.metadata)}
            for entry in entries
        ]
        chain_valid, broken_at = self.verify_chain()

        return {
            "export_metadata": {
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(exported),
                "event_types": sorted(t.value for t in event_types) if event_types else None,
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": exported,
        }

    def __len__(self) -> int:
        return len(self._entries)
