"""Shared fixtures: a registry-backed engine with one fee token."""

import dataclasses

import pytest
from eth_account import Account

from paymaster.codec import encode_voucher
from paymaster.engine import EngineConfig, SponsorshipEngine
from paymaster.events import EventLog
from paymaster.operation import NormalizedOperation
from paymaster.registry import SignerRegistry
from paymaster.tokens import Erc20Token, TokenDirectory
from paymaster.verifier import sign_voucher


CHAIN_ID = 8453
PAYMASTER = "0x" + "aa" * 20
HOST = "0x" + "e7" * 20
FEE_TOKEN = "0x" + "70" * 20
SENDER = "0x" + "5e" * 20


def make_op(**overrides) -> NormalizedOperation:
    fields = dict(
        sender=SENDER,
        nonce=7,
        init_code=b"",
        call_data=bytes.fromhex("b61d27f6") + b"\x00" * 32,
        call_gas_limit=120_000,
        verification_gas_limit=90_000,
        pre_verification_gas=48_000,
        max_fee_per_gas=2_000_000_000,
        max_priority_fee_per_gas=1_000_000_000,
        paymaster=PAYMASTER,
        paymaster_verification_gas_limit=100_000,
        paymaster_post_op_gas_limit=50_000,
    )
    fields.update(overrides)
    return NormalizedOperation(**fields)


def attach(op: NormalizedOperation, key, voucher, chain_id: int = CHAIN_ID) -> NormalizedOperation:
    """Sign ``voucher`` for ``op`` and return the op carrying it."""
    signed = sign_voucher(key, op, voucher, chain_id=chain_id, paymaster=PAYMASTER)
    return dataclasses.replace(op, paymaster_data=encode_voucher(signed))


@pytest.fixture(autouse=True)
def _no_env_hmac_key(monkeypatch):
    monkeypatch.delenv("PAYMASTER_EVENT_HMAC_KEY", raising=False)


@pytest.fixture
def signer():
    return Account.create()


@pytest.fixture
def events():
    return EventLog()


@pytest.fixture
def registry(signer, events):
    return SignerRegistry(signer.address, hosts=[HOST], events=events)


@pytest.fixture
def fee_token():
    return Erc20Token(FEE_TOKEN, symbol="USDC", decimals=18)


@pytest.fixture
def engine(registry, fee_token, events):
    return SponsorshipEngine(
        EngineConfig(chain_id=CHAIN_ID, address=PAYMASTER),
        registry,
        TokenDirectory([fee_token]),
        events=events,
        clock=lambda: 1_700_000_000,
    )
