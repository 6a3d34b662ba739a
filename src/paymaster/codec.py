"""
Sponsorship voucher codec.

The voucher lives in a user operation's ``paymasterAndData`` field, after a
52-byte header owned by the host:

    address(paymaster) ‖ uint128(validationGasLimit) ‖ uint128(postOpGasLimit)

The remaining tail is a mode byte followed by a mode-specific body and a
trailing signature that consumes every byte left:

    Verifying: fundAmount:uint128 ‖ validUntil:uint48 ‖ validAfter:uint48 ‖ sig
    ERC20:     fundAmount:uint128 ‖ validUntil:uint48 ‖ validAfter:uint48
               ‖ feeToken:address ‖ exchangeRate:uint256 ‖ sig

All integers are big-endian and tightly packed. Every length check runs
before any field is read, so callers never see a partially decoded voucher.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import IntEnum
from typing import Union

from .errors import (
    ConfigTooShortError,
    DataTooShortError,
    ModeInvalidError,
    PriceInvalidError,
    SignatureLengthInvalidError,
    TokenAddressInvalidError,
)


ZERO_ADDRESS = "0x" + "00" * 20

ADDRESS_LENGTH = 20
UINT48_LENGTH = 6
UINT128_LENGTH = 16
UINT256_LENGTH = 32

PAYMASTER_HEADER_LENGTH = ADDRESS_LENGTH + 2 * UINT128_LENGTH
MODE_LENGTH = 1
VERIFYING_CONFIG_LENGTH = UINT128_LENGTH + 2 * UINT48_LENGTH
ERC20_CONFIG_LENGTH = VERIFYING_CONFIG_LENGTH + ADDRESS_LENGTH + UINT256_LENGTH
SIGNATURE_LENGTHS = (64, 65)

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


class VoucherMode(IntEnum):
    VERIFYING = 0
    ERC20 = 1


_CONFIG_LENGTHS = {
    VoucherMode.VERIFYING: VERIFYING_CONFIG_LENGTH,
    VoucherMode.ERC20: ERC20_CONFIG_LENGTH,
}


@dataclass(frozen=True)
class VerifyingVoucher:
    """Gas-only sponsorship: the paymaster pays and charges nothing."""

    fund_amount: int
    valid_until: int
    valid_after: int
    signature: bytes = b""

    @property
    def mode(self) -> VoucherMode:
        return VoucherMode.VERIFYING


@dataclass(frozen=True)
class Erc20Voucher:
    """Token-denominated sponsorship at a signer-attested exchange rate."""

    fund_amount: int
    valid_until: int
    valid_after: int
    fee_token: str
    exchange_rate: int
    signature: bytes = b""

    @property
    def mode(self) -> VoucherMode:
        return VoucherMode.ERC20


Voucher = Union[VerifyingVoucher, Erc20Voucher]


@dataclass(frozen=True)
class PaymasterHeader:
    """The host-owned prefix of ``paymasterAndData``."""

    paymaster: str
    validation_gas_limit: int
    post_op_gas_limit: int


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    candidate = address.strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid Ethereum address: {address}")
    return "0x" + candidate[2:].lower()


def address_to_bytes(address: str) -> bytes:
    return bytes.fromhex(normalize_address(address)[2:])


def bytes_to_address(raw: bytes) -> str:
    if len(raw) != ADDRESS_LENGTH:
        raise ValueError(f"Address must be {ADDRESS_LENGTH} bytes, got {len(raw)}")
    return "0x" + raw.hex()


def hex_to_bytes(value: str | bytes) -> bytes:
    """Accept ``0x``-prefixed hex (or raw bytes) and return bytes."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    candidate = value.strip()
    if candidate.lower().startswith("0x"):
        candidate = candidate[2:]
    return bytes.fromhex(candidate)


def split_paymaster_and_data(paymaster_and_data: bytes) -> tuple[PaymasterHeader, bytes]:
    """Split ``paymasterAndData`` into its header and the voucher tail."""
    if len(paymaster_and_data) < PAYMASTER_HEADER_LENGTH:
        raise DataTooShortError(
            f"paymasterAndData is {len(paymaster_and_data)} bytes, "
            f"header needs {PAYMASTER_HEADER_LENGTH}"
        )
    header = PaymasterHeader(
        paymaster=bytes_to_address(paymaster_and_data[:ADDRESS_LENGTH]),
        validation_gas_limit=int.from_bytes(
            paymaster_and_data[ADDRESS_LENGTH:ADDRESS_LENGTH + UINT128_LENGTH], "big"
        ),
        post_op_gas_limit=int.from_bytes(
            paymaster_and_data[ADDRESS_LENGTH + UINT128_LENGTH:PAYMASTER_HEADER_LENGTH], "big"
        ),
    )
    return header, paymaster_and_data[PAYMASTER_HEADER_LENGTH:]


def decode_voucher(data: bytes) -> Voucher:
    """Decode the voucher tail (mode byte onward)."""
    if len(data) < MODE_LENGTH:
        raise DataTooShortError("Paymaster data has no mode byte")

    raw_mode = data[0]
    if raw_mode not in _CONFIG_LENGTHS:
        raise ModeInvalidError(raw_mode)
    mode = VoucherMode(raw_mode)

    body = data[MODE_LENGTH:]
    config_length = _CONFIG_LENGTHS[mode]
    if len(body) < config_length:
        raise ConfigTooShortError(len(body), config_length)

    signature_length = len(body) - config_length
    if signature_length not in SIGNATURE_LENGTHS:
        raise SignatureLengthInvalidError(signature_length)

    config = body[:config_length]
    signature = bytes(body[config_length:])

    fund_amount = int.from_bytes(config[0:16], "big")
    valid_until = int.from_bytes(config[16:22], "big")
    valid_after = int.from_bytes(config[22:28], "big")

    if mode == VoucherMode.VERIFYING:
        return VerifyingVoucher(
            fund_amount=fund_amount,
            valid_until=valid_until,
            valid_after=valid_after,
            signature=signature,
        )

    fee_token = bytes_to_address(config[28:48])
    exchange_rate = int.from_bytes(config[48:80], "big")
    if fee_token == ZERO_ADDRESS:
        raise TokenAddressInvalidError("ERC-20 mode requires a non-zero fee token")
    if exchange_rate == 0:
        raise PriceInvalidError("ERC-20 mode requires a non-zero exchange rate")

    return Erc20Voucher(
        fund_amount=fund_amount,
        valid_until=valid_until,
        valid_after=valid_after,
        fee_token=fee_token,
        exchange_rate=exchange_rate,
        signature=signature,
    )


def encode_voucher(voucher: Voucher) -> bytes:
    """Encode a voucher tail; the inverse of :func:`decode_voucher`."""
    if len(voucher.signature) not in SIGNATURE_LENGTHS:
        raise SignatureLengthInvalidError(len(voucher.signature))

    out = bytes([voucher.mode])
    out += _uint(voucher.fund_amount, UINT128_LENGTH, "fund_amount")
    out += _uint(voucher.valid_until, UINT48_LENGTH, "valid_until")
    out += _uint(voucher.valid_after, UINT48_LENGTH, "valid_after")

    if isinstance(voucher, Erc20Voucher):
        token = normalize_address(voucher.fee_token)
        if token == ZERO_ADDRESS:
            raise TokenAddressInvalidError("ERC-20 mode requires a non-zero fee token")
        if voucher.exchange_rate == 0:
            raise PriceInvalidError("ERC-20 mode requires a non-zero exchange rate")
        out += address_to_bytes(token)
        out += _uint(voucher.exchange_rate, UINT256_LENGTH, "exchange_rate")

    return out + bytes(voucher.signature)


def pack_paymaster_and_data(
    paymaster: str,
    validation_gas_limit: int,
    post_op_gas_limit: int,
    voucher: Voucher,
) -> bytes:
    """Build a full ``paymasterAndData`` value for a signed voucher."""
    return (
        address_to_bytes(paymaster)
        + _uint(validation_gas_limit, UINT128_LENGTH, "validation_gas_limit")
        + _uint(post_op_gas_limit, UINT128_LENGTH, "post_op_gas_limit")
        + encode_voucher(voucher)
    )


def voucher_to_dict(voucher: Voucher) -> dict:
    d = {
        "mode": voucher.mode.name.lower(),
        "fund_amount": voucher.fund_amount,
        "valid_until": voucher.valid_until,
        "valid_after": voucher.valid_after,
        "signature": "0x" + voucher.signature.hex(),
    }
    if isinstance(voucher, Erc20Voucher):
        d["fee_token"] = voucher.fee_token
        d["exchange_rate"] = voucher.exchange_rate
    return d


def _uint(value: int, width: int, field_name: str) -> bytes:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{field_name} must be an integer")
    if value < 0 or value >= 1 << (8 * width):
        raise ValueError(f"{field_name} does not fit uint{8 * width}: {value}")
    return value.to_bytes(width, "big")
