"""
Append-only event log for sponsorship and registry activity.

Events are kept in memory and, when a path is given, appended as JSONL
entries with an HMAC hash chain so tampering is detected during reads.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .storage import ensure_private_dir, ensure_private_file


class EventType(str, Enum):
    SPONSORSHIP_RECORDED = "SponsorshipRecorded"
    SETTLEMENT_REVERTED = "SettlementReverted"
    TREASURY_UPDATED = "TreasuryUpdated"
    SIGNER_ADDED = "SignerAdded"
    SIGNER_REMOVED = "SignerRemoved"
    HOST_ADDED = "HostAdded"
    HOST_REMOVED = "HostRemoved"
    OWNERSHIP_TRANSFERRED = "OwnershipTransferred"


@dataclass
class Event:
    """A single log entry."""

    event_type: str
    timestamp: float
    args: dict[str, Any] = field(default_factory=dict)
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))


class EventLog:
    """Tamper-evident append-only log; file-backed when ``path`` is set."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path
        self._events: list[Event] = []
        self._lock = threading.Lock()

        if self.path is not None:
            self.key_path = key_path or self.path.parent / ".event_hmac.key"
            ensure_private_dir(self.path.parent)
            ensure_private_dir(self.key_path.parent)
            ensure_private_file(self.path)
            ensure_private_file(self.key_path)
        else:
            self.key_path = key_path

        self._hmac_key = self._load_or_create_key()
        self._last_hash = self._scan_last_hash()

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv("PAYMASTER_EVENT_HMAC_KEY")
        if env_key:
            return env_key.encode()
        if self.key_path is None:
            return secrets.token_hex(32).encode()
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _scan_last_hash(self) -> str:
        if self.path is None or not self.path.exists():
            return ""
        last = ""
        with open(self.path, "r") as f:
            for line in f:
                if not line.strip():
                    continue
                last = json.loads(line).get("event_hash", "")
        return last

    def _event_hash(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def emit(self, event_type: EventType, **args: Any) -> Event:
        """Append one event; emits are serialized so the hash chain stays linear."""
        with self._lock:
            payload = {
                "event_type": event_type.value,
                "timestamp": time.time(),
                "args": args,
            }
            prev_hash = self._last_hash
            current_hash = self._event_hash(payload, prev_hash)
            event = Event(**payload, prev_hash=prev_hash or None, event_hash=current_hash)

            if self.path is not None:
                with open(self.path, "a") as f:
                    f.write(event.to_json() + "\n")
                    f.flush()
                    os.fsync(f.fileno())
                ensure_private_file(self.path)

            self._events.append(event)
            self._last_hash = current_hash
            return event

    def events(self, event_type: Optional[EventType] = None) -> list[Event]:
        """Events emitted by this instance, oldest first."""
        if event_type is None:
            return list(self._events)
        return [e for e in self._events if e.event_type == event_type.value]

    def read_events(
        self,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[Event]:
        """Read the backing file, verifying the hash chain."""
        if self.path is None or not self.path.exists():
            return self.events(event_type)[-limit:]

        events: list[Event] = []
        expected_prev = ""
        with self._lock, open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                raw = json.loads(line)

                payload = {k: v for k, v in raw.items() if k not in {"prev_hash", "event_hash"}}
                prev_hash = raw.get("prev_hash", "") or ""
                event_hash = raw.get("event_hash", "") or ""
                if prev_hash != expected_prev:
                    raise RuntimeError("Event chain broken: previous hash mismatch")
                expected_hash = self._event_hash(payload, prev_hash)
                if not hmac.compare_digest(expected_hash, event_hash):
                    raise RuntimeError("Event chain broken: event hash mismatch")
                expected_prev = event_hash

                if event_type and raw.get("event_type") != event_type.value:
                    continue
                events.append(
                    Event(**{k: v for k, v in raw.items() if k in Event.__dataclass_fields__})
                )

            self._last_hash = expected_prev
        return events[-limit:]
