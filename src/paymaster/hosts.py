"""
Host adapters for the two EntryPoint user operation encodings.

EntryPoint v0.6 passes a flat ``UserOperation`` (every gas field on its
own). EntryPoint v0.7 passes a ``PackedUserOperation`` where gas limits and
fees are packed pairwise into ``bytes32`` words. Both adapters reduce their
encoding to :class:`NormalizedOperation` and delegate to one
:class:`SponsorshipEngine`, so equivalent operations hash identically no
matter which host version submits them.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .codec import hex_to_bytes, normalize_address, split_paymaster_and_data
from .engine import PostOpMode, SettlementContext, SponsorshipEngine, SponsorshipRecord
from .operation import NormalizedOperation


_UINT128_MASK = (1 << 128) - 1
_UINT48_MASK = (1 << 48) - 1


def pack_uint128_pair(high: int, low: int) -> bytes:
    """Pack two uint128 values into one bytes32 word (``high ‖ low``)."""
    for value in (high, low):
        if value < 0 or value > _UINT128_MASK:
            raise ValueError(f"Value does not fit uint128: {value}")
    return high.to_bytes(16, "big") + low.to_bytes(16, "big")


def unpack_uint128_pair(word: bytes) -> tuple[int, int]:
    if len(word) != 32:
        raise ValueError(f"Packed gas word must be 32 bytes, got {len(word)}")
    return int.from_bytes(word[:16], "big"), int.from_bytes(word[16:], "big")


def pack_validation_data(sig_failed: bool, valid_until: int, valid_after: int) -> int:
    """ERC-4337 validation data: ``sigFailed | validUntil << 160 | validAfter << 208``."""
    if not 0 <= valid_until <= _UINT48_MASK or not 0 <= valid_after <= _UINT48_MASK:
        raise ValueError("valid_until and valid_after must fit uint48")
    return int(bool(sig_failed)) | (valid_until << 160) | (valid_after << 208)


def unpack_validation_data(validation_data: int) -> tuple[bool, int, int]:
    sig_failed = (validation_data & ((1 << 160) - 1)) != 0
    valid_until = (validation_data >> 160) & _UINT48_MASK
    valid_after = (validation_data >> 208) & _UINT48_MASK
    return sig_failed, valid_until, valid_after


def _int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(str(value), 0)


def _hex(value: int) -> str:
    return hex(max(0, int(value)))


def _bytes_hex(value: bytes) -> str:
    return "0x" + value.hex()


@dataclass
class LegacyUserOperation:
    """EntryPoint v0.6 ``UserOperation``."""

    sender: str
    nonce: int
    init_code: bytes
    call_data: bytes
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    paymaster_and_data: bytes = b""
    signature: bytes = b""

    @classmethod
    def from_rpc(cls, d: Mapping[str, Any]) -> "LegacyUserOperation":
        return cls(
            sender=normalize_address(d["sender"]),
            nonce=_int(d["nonce"]),
            init_code=hex_to_bytes(d.get("initCode", "0x")),
            call_data=hex_to_bytes(d.get("callData", "0x")),
            call_gas_limit=_int(d["callGasLimit"]),
            verification_gas_limit=_int(d["verificationGasLimit"]),
            pre_verification_gas=_int(d["preVerificationGas"]),
            max_fee_per_gas=_int(d["maxFeePerGas"]),
            max_priority_fee_per_gas=_int(d["maxPriorityFeePerGas"]),
            paymaster_and_data=hex_to_bytes(d.get("paymasterAndData", "0x")),
            signature=hex_to_bytes(d.get("signature", "0x")),
        )

    def to_rpc(self) -> dict[str, Any]:
        return {
            "sender": self.sender,
            "nonce": _hex(self.nonce),
            "initCode": _bytes_hex(self.init_code),
            "callData": _bytes_hex(self.call_data),
            "callGasLimit": _hex(self.call_gas_limit),
            "verificationGasLimit": _hex(self.verification_gas_limit),
            "preVerificationGas": _hex(self.pre_verification_gas),
            "maxFeePerGas": _hex(self.max_fee_per_gas),
            "maxPriorityFeePerGas": _hex(self.max_priority_fee_per_gas),
            "paymasterAndData": _bytes_hex(self.paymaster_and_data),
            "signature": _bytes_hex(self.signature),
        }

    def normalize(self) -> NormalizedOperation:
        header, tail = split_paymaster_and_data(self.paymaster_and_data)
        return NormalizedOperation.from_header(
            header,
            tail,
            sender=self.sender,
            nonce=self.nonce,
            init_code=self.init_code,
            call_data=self.call_data,
            call_gas_limit=self.call_gas_limit,
            verification_gas_limit=self.verification_gas_limit,
            pre_verification_gas=self.pre_verification_gas,
            max_fee_per_gas=self.max_fee_per_gas,
            max_priority_fee_per_gas=self.max_priority_fee_per_gas,
        )


@dataclass
class PackedUserOperation:
    """EntryPoint v0.7 ``PackedUserOperation``.

    ``account_gas_limits`` is ``verificationGasLimit ‖ callGasLimit`` and
    ``gas_fees`` is ``maxPriorityFeePerGas ‖ maxFeePerGas``, each half a
    uint128.
    """

    sender: str
    nonce: int
    init_code: bytes
    call_data: bytes
    account_gas_limits: bytes
    pre_verification_gas: int
    gas_fees: bytes
    paymaster_and_data: bytes = b""
    signature: bytes = b""

    @classmethod
    def from_rpc(cls, d: Mapping[str, Any]) -> "PackedUserOperation":
        """Load either the packed on-chain form or the unpacked v0.7 RPC form."""
        if "accountGasLimits" in d:
            return cls(
                sender=normalize_address(d["sender"]),
                nonce=_int(d["nonce"]),
                init_code=hex_to_bytes(d.get("initCode", "0x")),
                call_data=hex_to_bytes(d.get("callData", "0x")),
                account_gas_limits=hex_to_bytes(d["accountGasLimits"]),
                pre_verification_gas=_int(d["preVerificationGas"]),
                gas_fees=hex_to_bytes(d["gasFees"]),
                paymaster_and_data=hex_to_bytes(d.get("paymasterAndData", "0x")),
                signature=hex_to_bytes(d.get("signature", "0x")),
            )

        init_code = b""
        if d.get("factory"):
            init_code = hex_to_bytes(d["factory"]) + hex_to_bytes(d.get("factoryData", "0x"))

        paymaster_and_data = b""
        if d.get("paymaster"):
            paymaster_and_data = (
                hex_to_bytes(d["paymaster"])
                + pack_uint128_pair(
                    _int(d.get("paymasterVerificationGasLimit", 0)),
                    _int(d.get("paymasterPostOpGasLimit", 0)),
                )
                + hex_to_bytes(d.get("paymasterData", "0x"))
            )

        return cls(
            sender=normalize_address(d["sender"]),
            nonce=_int(d["nonce"]),
            init_code=init_code,
            call_data=hex_to_bytes(d.get("callData", "0x")),
            account_gas_limits=pack_uint128_pair(
                _int(d["verificationGasLimit"]), _int(d["callGasLimit"])
            ),
            pre_verification_gas=_int(d["preVerificationGas"]),
            gas_fees=pack_uint128_pair(
                _int(d["maxPriorityFeePerGas"]), _int(d["maxFeePerGas"])
            ),
            paymaster_and_data=paymaster_and_data,
            signature=hex_to_bytes(d.get("signature", "0x")),
        )

    def to_rpc(self) -> dict[str, Any]:
        return {
            "sender": self.sender,
            "nonce": _hex(self.nonce),
            "initCode": _bytes_hex(self.init_code),
            "callData": _bytes_hex(self.call_data),
            "accountGasLimits": _bytes_hex(self.account_gas_limits),
            "preVerificationGas": _hex(self.pre_verification_gas),
            "gasFees": _bytes_hex(self.gas_fees),
            "paymasterAndData": _bytes_hex(self.paymaster_and_data),
            "signature": _bytes_hex(self.signature),
        }

    def normalize(self) -> NormalizedOperation:
        verification_gas_limit, call_gas_limit = unpack_uint128_pair(self.account_gas_limits)
        max_priority_fee_per_gas, max_fee_per_gas = unpack_uint128_pair(self.gas_fees)
        header, tail = split_paymaster_and_data(self.paymaster_and_data)
        return NormalizedOperation.from_header(
            header,
            tail,
            sender=self.sender,
            nonce=self.nonce,
            init_code=self.init_code,
            call_data=self.call_data,
            call_gas_limit=call_gas_limit,
            verification_gas_limit=verification_gas_limit,
            pre_verification_gas=self.pre_verification_gas,
            max_fee_per_gas=max_fee_per_gas,
            max_priority_fee_per_gas=max_priority_fee_per_gas,
        )


class LegacyHostAdapter:
    """Callback surface for EntryPoint v0.6 hosts.

    v0.6 ``postOp`` receives no fee-per-gas figure, so the operation's fee
    caps travel inside the context instead.
    """

    def __init__(self, engine: SponsorshipEngine):
        self.engine = engine

    def validate_paymaster_user_op(
        self,
        caller: str,
        user_op: LegacyUserOperation,
        user_op_hash: bytes,
        max_cost: int,
    ) -> tuple[bytes, int]:
        context, valid_until = self.engine.validate(
            caller, user_op.normalize(), user_op_hash, max_cost
        )
        context = dataclasses.replace(
            context,
            max_fee_per_gas=user_op.max_fee_per_gas,
            max_priority_fee_per_gas=user_op.max_priority_fee_per_gas,
        )
        return context.encode(), pack_validation_data(False, valid_until, 0)

    def post_op(
        self,
        caller: str,
        mode: PostOpMode | int,
        context: bytes,
        actual_gas_cost: int,
    ) -> Optional[SponsorshipRecord]:
        settlement = SettlementContext.decode(context)
        return self.engine.settle(
            caller,
            PostOpMode(mode),
            settlement,
            actual_gas_cost,
            actual_fee_per_gas=settlement.max_fee_per_gas,
        )


class PackedHostAdapter:
    """Callback surface for EntryPoint v0.7 hosts."""

    def __init__(self, engine: SponsorshipEngine):
        self.engine = engine

    def validate_paymaster_user_op(
        self,
        caller: str,
        user_op: PackedUserOperation,
        user_op_hash: bytes,
        max_cost: int,
    ) -> tuple[bytes, int]:
        context, valid_until = self.engine.validate(
            caller, user_op.normalize(), user_op_hash, max_cost
        )
        return context.encode(), pack_validation_data(False, valid_until, 0)

    def post_op(
        self,
        caller: str,
        mode: PostOpMode | int,
        context: bytes,
        actual_gas_cost: int,
        actual_user_op_fee_per_gas: int,
    ) -> Optional[SponsorshipRecord]:
        return self.engine.settle(
            caller,
            PostOpMode(mode),
            SettlementContext.decode(context),
            actual_gas_cost,
            actual_fee_per_gas=actual_user_op_fee_per_gas,
        )
