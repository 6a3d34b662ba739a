"""
Two-phase sponsorship engine.

Flow for one user operation:
1. Host calls ``validate`` before execution: decode the voucher, authorize
   it against the signer registry, hand back a settlement context.
2. Host executes the operation.
3. Host calls ``settle`` with the actual gas cost. Verifying mode only
   records the sponsorship; ERC-20 mode pulls ``gas × rate`` tokens from the
   sender into the treasury.
4. If that settle call itself failed, the host calls ``settle`` once more
   with ``POST_OP_REVERTED``. That call is a notification: no token pull,
   no error.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Callable, Optional

from eth_abi import decode, encode

from .codec import Erc20Voucher, VoucherMode, ZERO_ADDRESS, decode_voucher, normalize_address
from .errors import (
    CallerNotHostError,
    ContextNotAuthorizedError,
    PaymasterError,
    SelfCallOnlyError,
    TokenTransferError,
    TransferFromFailedError,
)
from .events import EventLog, EventType
from .money import token_cost
from .operation import NormalizedOperation
from .registry import SignerRegistry
from .tokens import TokenTransferer
from .verifier import verify_voucher

logger = logging.getLogger(__name__)


_CONTEXT_TYPES = [
    "uint8",    # mode
    "address",  # signer
    "address",  # sender
    "address",  # feeToken
    "uint256",  # exchangeRate
    "bytes32",  # operationHash
    "uint128",  # fundAmount
    "bool",     # carries fee fields
    "uint256",  # maxFeePerGas
    "uint256",  # maxPriorityFeePerGas
]


class PostOpMode(IntEnum):
    OP_SUCCEEDED = 0
    OP_REVERTED = 1
    POST_OP_REVERTED = 2


class OperationPhase(str, Enum):
    """Only in-flight operations are tracked; settled and reverted ones are dropped."""

    UNVALIDATED = "unvalidated"
    AUTHORIZED = "authorized"


@dataclass
class EngineConfig:
    chain_id: int
    address: str

    def __post_init__(self) -> None:
        self.address = normalize_address(self.address)
        if self.chain_id <= 0:
            raise ValueError(f"chain_id must be > 0, got {self.chain_id}")

    @classmethod
    def from_env(cls) -> "EngineConfig":
        chain_id = os.getenv("PAYMASTER_CHAIN_ID")
        address = os.getenv("PAYMASTER_ADDRESS")
        if not chain_id or not address:
            raise ValueError("PAYMASTER_CHAIN_ID and PAYMASTER_ADDRESS must be set")
        return cls(chain_id=int(chain_id, 0), address=address)


@dataclass(frozen=True)
class SettlementContext:
    """State threaded from validate to settle for one operation."""

    mode: VoucherMode
    signer: str
    sender: str
    fee_token: str
    exchange_rate: int
    operation_hash: bytes
    fund_amount: int = 0
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None

    def encode(self) -> bytes:
        """Opaque bytes form handed to the host as the ERC-4337 context."""
        has_fee_fields = self.max_fee_per_gas is not None
        return encode(
            _CONTEXT_TYPES,
            [
                int(self.mode),
                self.signer,
                self.sender,
                self.fee_token,
                self.exchange_rate,
                self.operation_hash,
                self.fund_amount,
                has_fee_fields,
                self.max_fee_per_gas or 0,
                self.max_priority_fee_per_gas or 0,
            ],
        )

    @classmethod
    def decode(cls, data: bytes) -> "SettlementContext":
        (
            mode,
            signer,
            sender,
            fee_token,
            exchange_rate,
            operation_hash,
            fund_amount,
            has_fee_fields,
            max_fee_per_gas,
            max_priority_fee_per_gas,
        ) = decode(_CONTEXT_TYPES, data)
        return cls(
            mode=VoucherMode(mode),
            signer=normalize_address(signer),
            sender=normalize_address(sender),
            fee_token=normalize_address(fee_token),
            exchange_rate=exchange_rate,
            operation_hash=bytes(operation_hash),
            fund_amount=fund_amount,
            max_fee_per_gas=max_fee_per_gas if has_fee_fields else None,
            max_priority_fee_per_gas=max_priority_fee_per_gas if has_fee_fields else None,
        )


@dataclass
class SponsorshipRecord:
    """Payload of a ``SponsorshipRecorded`` event.

    ``fee_per_gas`` is the host's effective fee figure: the v0.7 actual fee
    per gas, or the v0.6 ``maxFeePerGas`` carried in the context. It is
    recorded for accounting and does not affect ``token_amount``.
    """

    operation_hash: str
    sender: str
    fee_token: str
    token_amount: int
    price: int
    signer: str
    mode: str
    actual_gas_cost: int
    fee_per_gas: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "operation_hash": self.operation_hash,
            "sender": self.sender,
            "erc20": self.fee_token,
            "token_amount": self.token_amount,
            "price": self.price,
            "signer": self.signer,
            "mode": self.mode,
            "actual_gas_cost": self.actual_gas_cost,
            "fee_per_gas": self.fee_per_gas,
        }


class SponsorshipEngine:
    """Validates vouchers and settles sponsored operations for registered hosts."""

    def __init__(
        self,
        config: EngineConfig,
        registry: SignerRegistry,
        tokens: TokenTransferer,
        events: Optional[EventLog] = None,
        clock: Callable[[], float] = time.time,
        prefund: Optional[Callable[[str, int], None]] = None,
    ):
        self.config = config
        self.registry = registry
        self.tokens = tokens
        self.events = events or registry.events
        self._clock = clock
        self._prefund = prefund
        self._phases: dict[bytes, OperationPhase] = {}

    @property
    def address(self) -> str:
        return self.config.address

    def phase(self, operation_hash: bytes) -> OperationPhase:
        return self._phases.get(bytes(operation_hash), OperationPhase.UNVALIDATED)

    @property
    def pending(self) -> int:
        """Number of authorized operations awaiting settlement."""
        return len(self._phases)

    def _require_host(self, caller: str) -> None:
        if not self.registry.is_host(caller):
            raise CallerNotHostError(caller)

    def validate(
        self,
        caller: str,
        operation: NormalizedOperation,
        op_hash: bytes,
        max_cost: int,
    ) -> tuple[SettlementContext, int]:
        """Authorize sponsorship; returns the context and the validity deadline."""
        self._require_host(caller)
        op_hash = bytes(op_hash)
        if len(op_hash) != 32:
            raise ValueError(f"op_hash must be 32 bytes, got {len(op_hash)}")

        try:
            voucher = decode_voucher(operation.paymaster_data)
            signer = verify_voucher(
                operation,
                voucher,
                self.registry,
                chain_id=self.config.chain_id,
                paymaster=self.address,
                now=int(self._clock()),
            )
        except PaymasterError as exc:
            logger.warning(
                "Sponsorship rejected for %s (op 0x%s): %s",
                operation.sender, op_hash.hex(), exc,
            )
            raise

        if isinstance(voucher, Erc20Voucher):
            fee_token = voucher.fee_token
            exchange_rate = voucher.exchange_rate
        else:
            fee_token = ZERO_ADDRESS
            exchange_rate = 0
            if voucher.fund_amount > 0 and self._prefund is not None:
                self._prefund(operation.sender, voucher.fund_amount)

        context = SettlementContext(
            mode=voucher.mode,
            signer=signer,
            sender=operation.sender,
            fee_token=fee_token,
            exchange_rate=exchange_rate,
            operation_hash=op_hash,
            fund_amount=voucher.fund_amount,
        )
        self._phases[op_hash] = OperationPhase.AUTHORIZED
        logger.info(
            "Sponsorship authorized: op=0x%s sender=%s mode=%s signer=%s max_cost=%s",
            op_hash.hex(), operation.sender, voucher.mode.name, signer, max_cost,
        )
        return context, voucher.valid_until

    def settle(
        self,
        caller: str,
        mode: PostOpMode,
        context: SettlementContext,
        actual_gas_cost: int,
        actual_fee_per_gas: Optional[int] = None,
    ) -> Optional[SponsorshipRecord]:
        """Settle an authorized operation; returns the emitted record, if any.

        Once tokens have moved the operation is no longer pending, so a
        failing event sink cannot lead to a second charge.
        """
        self._require_host(caller)
        op_hash = context.operation_hash

        if mode == PostOpMode.POST_OP_REVERTED:
            self._acknowledge_revert(context)
            return None

        if self.phase(op_hash) != OperationPhase.AUTHORIZED:
            raise ContextNotAuthorizedError(
                f"Operation 0x{op_hash.hex()} is {self.phase(op_hash).value}, not awaiting settlement"
            )

        if context.mode == VoucherMode.ERC20:
            token_amount = token_cost(actual_gas_cost, context.exchange_rate)
            price = context.exchange_rate
            treasury = self.registry.treasury
            try:
                self.attempt_transfer(
                    self.address, context.fee_token, context.sender, treasury, token_amount
                )
            except TokenTransferError as exc:
                logger.warning(
                    "Token settlement failed for op 0x%s (%s owes %s of %s): %s",
                    op_hash.hex(), context.sender, token_amount, context.fee_token, exc.reason,
                )
                raise TransferFromFailedError(exc.reason) from exc
        else:
            token_amount = 0
            price = 0

        record = SponsorshipRecord(
            operation_hash="0x" + op_hash.hex(),
            sender=context.sender,
            fee_token=context.fee_token,
            token_amount=token_amount,
            price=price,
            signer=context.signer,
            mode=context.mode.name.lower(),
            actual_gas_cost=actual_gas_cost,
            fee_per_gas=actual_fee_per_gas,
        )
        del self._phases[op_hash]
        logger.info(
            "Sponsorship settled: op=0x%s mode=%s gas_cost=%s token_amount=%s fee_per_gas=%s",
            op_hash.hex(), record.mode, actual_gas_cost, token_amount, actual_fee_per_gas,
        )
        try:
            self.events.emit(EventType.SPONSORSHIP_RECORDED, **record.to_dict())
        except OSError:
            logger.exception("Failed to record sponsorship for op 0x%s", op_hash.hex())
        return record

    def _acknowledge_revert(self, context: SettlementContext) -> None:
        op_hash = context.operation_hash
        phase = self.phase(op_hash)
        if phase != OperationPhase.AUTHORIZED:
            logger.warning(
                "Post-op revert notice for op 0x%s in phase %s; ignoring",
                op_hash.hex(), phase.value,
            )
            return

        del self._phases[op_hash]
        logger.warning("Settlement reverted for op 0x%s; no token pull attempted", op_hash.hex())
        try:
            self.events.emit(
                EventType.SETTLEMENT_REVERTED,
                operation_hash="0x" + op_hash.hex(),
                sender=context.sender,
                mode=context.mode.name.lower(),
            )
        except OSError:
            # The host must be able to finalize even if the log sink is down.
            logger.exception("Failed to record settlement revert for op 0x%s", op_hash.hex())

    def attempt_transfer(
        self,
        caller: str,
        token: str,
        sender: str,
        recipient: str,
        amount: int,
    ) -> None:
        """Pull ``amount`` of ``token`` from ``sender``; callable only by the engine itself."""
        try:
            is_self = normalize_address(caller) == self.address
        except ValueError:
            is_self = False
        if not is_self:
            raise SelfCallOnlyError(caller)
        self.tokens.transfer_from(token, self.address, sender, recipient, amount)
