"""Host-independent view of a user operation."""

from __future__ import annotations

from dataclasses import dataclass

from .codec import PaymasterHeader, normalize_address


@dataclass(frozen=True)
class NormalizedOperation:
    """Everything the engine reads from a user operation.

    Both host adapters produce this view; the canonical sponsorship hash is
    derived from it alone, so two encodings of the same operation always
    hash identically.
    """

    sender: str
    nonce: int
    init_code: bytes
    call_data: bytes
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    paymaster: str
    paymaster_verification_gas_limit: int
    paymaster_post_op_gas_limit: int
    paymaster_data: bytes = b""

    def __post_init__(self) -> None:
        object.__setattr__(self, "sender", normalize_address(self.sender))
        object.__setattr__(self, "paymaster", normalize_address(self.paymaster))

    @classmethod
    def from_header(
        cls,
        header: PaymasterHeader,
        paymaster_data: bytes,
        **fields,
    ) -> "NormalizedOperation":
        return cls(
            paymaster=header.paymaster,
            paymaster_verification_gas_limit=header.validation_gas_limit,
            paymaster_post_op_gas_limit=header.post_op_gas_limit,
            paymaster_data=paymaster_data,
            **fields,
        )
