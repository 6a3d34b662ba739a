"""Tests for signer registry administration and persistence."""

import json
import threading

import pytest

from paymaster.errors import NotOwnerError
from paymaster.events import EventLog, EventType
from paymaster.registry import SignerRegistry

OWNER = "0x" + "0a" * 20
OTHER = "0x" + "0b" * 20
HOST = "0x" + "e7" * 20


def test_owner_starts_as_sole_signer_and_treasury():
    registry = SignerRegistry("0x" + "0A" * 20)

    assert registry.owner == OWNER
    assert registry.signers == frozenset({OWNER})
    assert registry.treasury == OWNER
    assert registry.hosts == frozenset()


def test_owner_manages_signers_with_events():
    events = EventLog()
    registry = SignerRegistry(OWNER, events=events)

    registry.add_signer(OWNER, OTHER)
    assert registry.is_signer(OTHER)
    registry.remove_signer(OWNER, OTHER)
    assert not registry.is_signer(OTHER)

    assert [e.event_type for e in events.events()] == [
        EventType.SIGNER_ADDED.value,
        EventType.SIGNER_REMOVED.value,
    ]
    assert events.events()[0].args == {"signer": OTHER}


def test_non_owner_cannot_mutate():
    registry = SignerRegistry(OWNER)

    for action in ("add_signer", "remove_signer", "set_treasury", "add_host", "remove_host"):
        with pytest.raises(NotOwnerError):
            getattr(registry, action)(OTHER, HOST)

    assert registry.signers == frozenset({OWNER})
    assert registry.treasury == OWNER
    assert registry.hosts == frozenset()
    assert registry.events.events() == []


def test_malformed_caller_is_not_owner():
    registry = SignerRegistry(OWNER)

    for caller in ("garbage", "", "0x1234"):
        with pytest.raises(NotOwnerError):
            registry.add_signer(caller, OTHER)

    assert registry.signers == frozenset({OWNER})


def test_concurrent_mutations_keep_one_event_chain(tmp_path):
    events = EventLog(path=tmp_path / "events.jsonl")
    registry = SignerRegistry(OWNER, events=events)
    signers = ["0x" + f"{i:040x}" for i in range(1, 41)]

    threads = [threading.Thread(target=registry.add_signer, args=(OWNER, s)) for s in signers]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    recorded = events.read_events(EventType.SIGNER_ADDED, limit=1000)
    assert sorted(e.args["signer"] for e in recorded) == sorted(signers)
    assert registry.signers == frozenset({OWNER, *signers})


def test_set_treasury_emits_old_and_new():
    registry = SignerRegistry(OWNER)
    registry.set_treasury(OWNER, OTHER)

    (event,) = registry.events.events(EventType.TREASURY_UPDATED)
    assert event.args == {"old": OWNER, "new": OTHER}
    assert registry.treasury == OTHER


def test_host_allowlist():
    registry = SignerRegistry(OWNER, hosts=[HOST])
    assert registry.is_host(HOST.upper().replace("0X", "0x"))
    assert not registry.is_host("garbage")

    registry.remove_host(OWNER, HOST)
    assert not registry.is_host(HOST)


def test_transfer_ownership_moves_admin_rights():
    registry = SignerRegistry(OWNER)
    registry.transfer_ownership(OWNER, OTHER)

    with pytest.raises(NotOwnerError):
        registry.add_signer(OWNER, HOST)
    registry.add_signer(OTHER, HOST)
    assert registry.is_signer(HOST)
    # The previous owner keeps signing rights until removed.
    assert registry.is_signer(OWNER)


def test_save_and_load_roundtrip(tmp_path):
    path = tmp_path / "state" / "registry.json"
    registry = SignerRegistry(OWNER, hosts=[HOST])
    registry.add_signer(OWNER, OTHER)
    registry.set_treasury(OWNER, OTHER)
    registry.save(path)

    loaded = SignerRegistry.load(path)

    assert loaded.to_dict() == registry.to_dict()
    assert json.loads(path.read_text())["signers"] == sorted([OWNER, OTHER])
    assert (path.stat().st_mode & 0o777) == 0o600
