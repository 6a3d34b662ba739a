"""Owner-controlled registry of voucher signers, treasury and execution hosts."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Iterable, Optional

from .codec import normalize_address
from .errors import NotOwnerError
from .events import EventLog, EventType
from .storage import atomic_write_json, ensure_private_dir

logger = logging.getLogger(__name__)


class SignerRegistry:
    """Signer set, treasury and host allowlist behind a single mutation lock.

    Starts with the deploying owner as the sole signer and as treasury.
    Every mutation is owner-gated and emits an event.
    """

    def __init__(
        self,
        owner: str,
        *,
        hosts: Iterable[str] = (),
        events: Optional[EventLog] = None,
    ):
        self._owner = normalize_address(owner)
        self._signers: set[str] = {self._owner}
        self._treasury = self._owner
        self._hosts: set[str] = {normalize_address(h) for h in hosts}
        self.events = events or EventLog()
        self._lock = threading.Lock()

    # -- reads ---------------------------------------------------------

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def treasury(self) -> str:
        return self._treasury

    @property
    def signers(self) -> frozenset[str]:
        return frozenset(self._signers)

    @property
    def hosts(self) -> frozenset[str]:
        return frozenset(self._hosts)

    def is_signer(self, address: str) -> bool:
        return normalize_address(address) in self._signers

    def is_host(self, address: str) -> bool:
        try:
            return normalize_address(address) in self._hosts
        except ValueError:
            return False

    # -- owner-gated writes --------------------------------------------

    def _require_owner(self, caller: str) -> None:
        try:
            is_owner = normalize_address(caller) == self._owner
        except ValueError:
            is_owner = False
        if not is_owner:
            raise NotOwnerError(caller)

    def add_signer(self, caller: str, signer: str) -> None:
        normalized = normalize_address(signer)
        with self._lock:
            self._require_owner(caller)
            self._signers.add(normalized)
            logger.info("Signer added: %s", normalized)
            self.events.emit(EventType.SIGNER_ADDED, signer=normalized)

    def remove_signer(self, caller: str, signer: str) -> None:
        normalized = normalize_address(signer)
        with self._lock:
            self._require_owner(caller)
            self._signers.discard(normalized)
            remaining = len(self._signers)
            logger.info("Signer removed: %s (%d remaining)", normalized, remaining)
            self.events.emit(EventType.SIGNER_REMOVED, signer=normalized)

    def set_treasury(self, caller: str, treasury: str) -> None:
        normalized = normalize_address(treasury)
        with self._lock:
            self._require_owner(caller)
            old = self._treasury
            self._treasury = normalized
            logger.info("Treasury updated: %s -> %s", old, normalized)
            self.events.emit(EventType.TREASURY_UPDATED, old=old, new=normalized)

    def add_host(self, caller: str, host: str) -> None:
        normalized = normalize_address(host)
        with self._lock:
            self._require_owner(caller)
            self._hosts.add(normalized)
            logger.info("Host added: %s", normalized)
            self.events.emit(EventType.HOST_ADDED, host=normalized)

    def remove_host(self, caller: str, host: str) -> None:
        normalized = normalize_address(host)
        with self._lock:
            self._require_owner(caller)
            self._hosts.discard(normalized)
            logger.info("Host removed: %s", normalized)
            self.events.emit(EventType.HOST_REMOVED, host=normalized)

    def transfer_ownership(self, caller: str, new_owner: str) -> None:
        normalized = normalize_address(new_owner)
        with self._lock:
            self._require_owner(caller)
            old = self._owner
            self._owner = normalized
            logger.info("Ownership transferred: %s -> %s", old, normalized)
            self.events.emit(EventType.OWNERSHIP_TRANSFERRED, previous_owner=old, new_owner=normalized)

    # -- persistence ---------------------------------------------------

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "owner": self._owner,
                "signers": sorted(self._signers),
                "treasury": self._treasury,
                "hosts": sorted(self._hosts),
            }

    @classmethod
    def from_dict(cls, state: dict, events: Optional[EventLog] = None) -> "SignerRegistry":
        registry = cls(state["owner"], hosts=state.get("hosts", []), events=events)
        registry._signers = {normalize_address(s) for s in state.get("signers", [])}
        registry._treasury = normalize_address(state.get("treasury", state["owner"]))
        return registry

    def save(self, path: Path) -> None:
        ensure_private_dir(path.parent)
        atomic_write_json(path, self.to_dict())

    @classmethod
    def load(cls, path: Path, events: Optional[EventLog] = None) -> "SignerRegistry":
        with open(path, encoding="utf-8") as f:
            return cls.from_dict(json.load(f), events=events)
