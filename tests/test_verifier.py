"""Tests for voucher signing, hashing and signer recovery."""

import dataclasses

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from conftest import CHAIN_ID, FEE_TOKEN, PAYMASTER, make_op
from paymaster.codec import Erc20Voucher, VerifyingVoucher
from paymaster.errors import ExpiredError, NotYetValidError, SignatureInvalidError
from paymaster.registry import SignerRegistry
from paymaster.verifier import (
    expand_signature,
    sign_voucher,
    sponsorship_hash,
    to_compact_signature,
    verify_voucher,
)

NOW = 1_700_000_000


def _voucher(**overrides):
    fields = dict(fund_amount=0, valid_until=NOW + 3600, valid_after=NOW - 60)
    fields.update(overrides)
    return VerifyingVoucher(**fields)


def _sign(signer, op, voucher, **kwargs):
    return sign_voucher(signer.key, op, voucher, chain_id=CHAIN_ID, paymaster=PAYMASTER, **kwargs)


def _verify(op, voucher, registry, now=NOW, chain_id=CHAIN_ID):
    return verify_voucher(op, voucher, registry, chain_id=chain_id, paymaster=PAYMASTER, now=now)


def test_signed_voucher_recovers_registered_signer(signer, registry):
    op = make_op()
    signed = _sign(signer, op, _voucher())

    assert len(signed.signature) == 65
    assert _verify(op, signed, registry) == signer.address.lower()


def test_compact_signature_verifies(signer, registry):
    op = make_op()
    signed = _sign(signer, op, _voucher(), compact=True)

    assert len(signed.signature) == 64
    assert _verify(op, signed, registry) == signer.address.lower()


def test_compact_expand_roundtrip(signer):
    full = bytes(Account.sign_message(encode_defunct(text="x"), private_key=signer.key).signature)
    assert expand_signature(to_compact_signature(full)) == full


def test_unregistered_signer_rejected(registry):
    stranger = Account.create()
    op = make_op()
    signed = _sign(stranger, op, _voucher())

    with pytest.raises(SignatureInvalidError, match="not registered"):
        _verify(op, signed, registry)


def test_garbage_signature_rejected(registry):
    voucher = _voucher(signature=b"\x00" * 65)
    with pytest.raises(SignatureInvalidError):
        _verify(make_op(), voucher, registry)


@pytest.mark.parametrize(
    "field,value",
    [
        ("nonce", 8),
        ("call_gas_limit", 120_001),
        ("max_fee_per_gas", 3_000_000_000),
        ("call_data", b"\xde\xad"),
        ("paymaster_post_op_gas_limit", 60_000),
    ],
)
def test_any_bound_operation_field_change_breaks_signature(signer, registry, field, value):
    op = make_op()
    signed = _sign(signer, op, _voucher())
    tampered = dataclasses.replace(op, **{field: value})

    with pytest.raises(SignatureInvalidError):
        _verify(tampered, signed, registry)


def test_voucher_terms_are_bound(signer, registry):
    op = make_op()
    signed = _sign(signer, op, _voucher())

    with pytest.raises(SignatureInvalidError):
        _verify(op, dataclasses.replace(signed, valid_until=NOW + 999_999), registry)
    with pytest.raises(SignatureInvalidError):
        _verify(op, dataclasses.replace(signed, fund_amount=10 ** 18), registry)


def test_signature_does_not_replay_across_chains(signer, registry):
    op = make_op()
    signed = _sign(signer, op, _voucher())

    with pytest.raises(SignatureInvalidError):
        _verify(op, signed, registry, chain_id=CHAIN_ID + 1)


def test_erc20_rate_is_bound(signer, registry):
    op = make_op()
    voucher = Erc20Voucher(
        fund_amount=0,
        valid_until=0,
        valid_after=0,
        fee_token=FEE_TOKEN,
        exchange_rate=1_600_000_000_000_000,
    )
    signed = _sign(signer, op, voucher)

    assert _verify(op, signed, registry) == signer.address.lower()
    with pytest.raises(SignatureInvalidError):
        _verify(op, dataclasses.replace(signed, exchange_rate=1), registry)


def test_expired_at_valid_until(signer, registry):
    op = make_op()
    signed = _sign(signer, op, _voucher(valid_until=NOW))

    with pytest.raises(ExpiredError) as exc:
        _verify(op, signed, registry, now=NOW)
    assert exc.value.valid_until == NOW


def test_not_yet_valid(signer, registry):
    op = make_op()
    signed = _sign(signer, op, _voucher(valid_after=NOW + 10))

    with pytest.raises(NotYetValidError):
        _verify(op, signed, registry, now=NOW)
    assert _verify(op, signed, registry, now=NOW + 10) == signer.address.lower()


def test_zero_valid_until_never_expires(signer, registry):
    op = make_op()
    signed = _sign(signer, op, _voucher(valid_until=0, valid_after=0))

    assert _verify(op, signed, registry, now=2 ** 40) == signer.address.lower()


def test_removed_signer_no_longer_authorizes(signer, events):
    backup = Account.create()
    registry = SignerRegistry(signer.address, events=events)
    registry.add_signer(signer.address, backup.address)
    op = make_op()
    signed = _sign(backup, op, _voucher())
    assert _verify(op, signed, registry) == backup.address.lower()

    registry.remove_signer(signer.address, backup.address)

    with pytest.raises(SignatureInvalidError):
        _verify(op, signed, registry)


def test_hash_ignores_signature_and_paymaster_data():
    op = make_op()
    voucher = _voucher()
    digest = sponsorship_hash(op, voucher, chain_id=CHAIN_ID, paymaster=PAYMASTER)

    assert len(digest) == 32
    assert digest == sponsorship_hash(
        dataclasses.replace(op, paymaster_data=b"\x01\x02"),
        dataclasses.replace(voucher, signature=b"\x00" * 65),
        chain_id=CHAIN_ID,
        paymaster=PAYMASTER,
    )
