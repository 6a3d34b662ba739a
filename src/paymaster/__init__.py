"""
Paymaster: singleton ERC-4337 gas sponsorship engine.

Signer-attested vouchers in ``paymasterAndData`` authorize either free
sponsorship or payment in an ERC-20 token at a signed exchange rate;
one engine serves both EntryPoint v0.6 and v0.7 hosts.
"""

__version__ = "0.1.0"

from .codec import (
    Erc20Voucher,
    VerifyingVoucher,
    VoucherMode,
    decode_voucher,
    encode_voucher,
    pack_paymaster_and_data,
    split_paymaster_and_data,
)
from .engine import (
    EngineConfig,
    OperationPhase,
    PostOpMode,
    SettlementContext,
    SponsorshipEngine,
    SponsorshipRecord,
)
from .events import EventLog, EventType
from .hosts import LegacyHostAdapter, LegacyUserOperation, PackedHostAdapter, PackedUserOperation
from .operation import NormalizedOperation
from .registry import SignerRegistry
from .tokens import Erc20Token, TokenDirectory
from .verifier import sign_voucher, sponsorship_hash, verify_voucher

__all__ = [
    "VoucherMode", "VerifyingVoucher", "Erc20Voucher",
    "decode_voucher", "encode_voucher", "pack_paymaster_and_data", "split_paymaster_and_data",
    "EngineConfig", "OperationPhase", "PostOpMode", "SettlementContext",
    "SponsorshipEngine", "SponsorshipRecord",
    "EventLog", "EventType",
    "LegacyHostAdapter", "LegacyUserOperation", "PackedHostAdapter", "PackedUserOperation",
    "NormalizedOperation", "SignerRegistry", "Erc20Token", "TokenDirectory",
    "sign_voucher", "sponsorship_hash", "verify_voucher",
]
