"""
Voucher authorization: canonical hashing, signing and signer recovery.

The signer attests to every field that affects what the sponsor pays: the
operation's identity and gas terms, the deployment (chain id and paymaster
address) and the voucher's window and price. Only the signature itself is
left out. The digest is wrapped in the EIP-191 personal-message envelope
before signing so a voucher signature can never double as a transaction or
typed-data signature.
"""

from __future__ import annotations

import dataclasses
import time
from typing import Optional, Protocol

from eth_abi import encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak

from .codec import Erc20Voucher, Voucher, ZERO_ADDRESS, normalize_address
from .errors import ExpiredError, NotYetValidError, SignatureInvalidError
from .operation import NormalizedOperation


_SPONSORSHIP_HASH_TYPES = [
    "address",  # sender
    "uint256",  # nonce
    "bytes32",  # keccak(initCode)
    "bytes32",  # keccak(callData)
    "uint256",  # callGasLimit
    "uint256",  # verificationGasLimit
    "uint256",  # preVerificationGas
    "uint256",  # maxFeePerGas
    "uint256",  # maxPriorityFeePerGas
    "uint256",  # paymasterVerificationGasLimit
    "uint256",  # paymasterPostOpGasLimit
    "uint256",  # chainId
    "address",  # paymaster
    "uint8",    # mode
    "uint48",   # validUntil
    "uint48",   # validAfter
    "address",  # feeToken
    "uint256",  # exchangeRate
    "uint128",  # fundAmount
]

_S_MASK = (1 << 255) - 1


class SignerLookup(Protocol):
    def is_signer(self, address: str) -> bool: ...


def sponsorship_hash(
    op: NormalizedOperation,
    voucher: Voucher,
    *,
    chain_id: int,
    paymaster: str,
) -> bytes:
    """Canonical 32-byte digest the voucher signer attests to."""
    if isinstance(voucher, Erc20Voucher):
        fee_token = normalize_address(voucher.fee_token)
        exchange_rate = voucher.exchange_rate
    else:
        fee_token = ZERO_ADDRESS
        exchange_rate = 0

    return keccak(
        encode(
            _SPONSORSHIP_HASH_TYPES,
            [
                op.sender,
                op.nonce,
                keccak(op.init_code),
                keccak(op.call_data),
                op.call_gas_limit,
                op.verification_gas_limit,
                op.pre_verification_gas,
                op.max_fee_per_gas,
                op.max_priority_fee_per_gas,
                op.paymaster_verification_gas_limit,
                op.paymaster_post_op_gas_limit,
                int(chain_id),
                normalize_address(paymaster),
                int(voucher.mode),
                voucher.valid_until,
                voucher.valid_after,
                fee_token,
                exchange_rate,
                voucher.fund_amount,
            ],
        )
    )


def sign_voucher(
    private_key: str | bytes,
    op: NormalizedOperation,
    voucher: Voucher,
    *,
    chain_id: int,
    paymaster: str,
    compact: bool = False,
) -> Voucher:
    """Return a copy of ``voucher`` signed for ``op`` on this deployment."""
    digest = sponsorship_hash(op, voucher, chain_id=chain_id, paymaster=paymaster)
    signed = Account.sign_message(encode_defunct(primitive=digest), private_key=private_key)
    signature = bytes(signed.signature)
    if compact:
        signature = to_compact_signature(signature)
    return dataclasses.replace(voucher, signature=signature)


def to_compact_signature(signature: bytes) -> bytes:
    """Convert a 65-byte ``r ‖ s ‖ v`` signature to EIP-2098 ``r ‖ yParityAndS``."""
    if len(signature) != 65:
        raise ValueError(f"Expected a 65-byte signature, got {len(signature)}")
    r, s, v = signature[:32], int.from_bytes(signature[32:64], "big"), signature[64]
    y_parity = v - 27 if v >= 27 else v
    return r + (s | (y_parity << 255)).to_bytes(32, "big")


def expand_signature(signature: bytes) -> bytes:
    """Return a 65-byte ``r ‖ s ‖ v`` signature, expanding EIP-2098 compact form."""
    if len(signature) == 65:
        return bytes(signature)
    if len(signature) != 64:
        raise ValueError(f"Signature must be 64 or 65 bytes, got {len(signature)}")
    vs = int.from_bytes(signature[32:64], "big")
    s = vs & _S_MASK
    v = 27 + (vs >> 255)
    return bytes(signature[:32]) + s.to_bytes(32, "big") + bytes([v])


def recover_signer(digest: bytes, signature: bytes) -> str:
    """Recover the personal-message signer of ``digest`` as a lower-case address."""
    try:
        recovered = Account.recover_message(
            encode_defunct(primitive=digest),
            signature=expand_signature(signature),
        )
    except Exception as exc:
        raise SignatureInvalidError(f"Signature recovery failed: {exc}") from exc
    return normalize_address(recovered)


def verify_voucher(
    op: NormalizedOperation,
    voucher: Voucher,
    signers: SignerLookup,
    *,
    chain_id: int,
    paymaster: str,
    now: Optional[int] = None,
) -> str:
    """Authorize ``voucher`` for ``op`` and return the recovered signer.

    Raises SignatureInvalidError, ExpiredError or NotYetValidError.
    """
    digest = sponsorship_hash(op, voucher, chain_id=chain_id, paymaster=paymaster)
    signer = recover_signer(digest, voucher.signature)
    if not signers.is_signer(signer):
        raise SignatureInvalidError(f"Recovered signer {signer} is not registered")

    current = int(time.time()) if now is None else int(now)
    if voucher.valid_until != 0 and current >= voucher.valid_until:
        raise ExpiredError(voucher.valid_until, current)
    if current < voucher.valid_after:
        raise NotYetValidError(voucher.valid_after, current)
    return signer
