"""
Paymaster error types.

Every failure in this protocol is permanent: a rejected voucher is never
worth retrying with the same bytes. The families below let hosts tell
"reject this operation before inclusion" apart from "the operation ran but
sponsorship settlement failed".
"""


class PaymasterError(Exception):
    """Base error for all paymaster operations."""
    pass


# Malformed input
class MalformedVoucherError(PaymasterError):
    """Base error for paymaster data that cannot be decoded."""
    pass


class DataTooShortError(MalformedVoucherError):
    """Paymaster data ends before the bytes the layout requires."""
    pass


class ModeInvalidError(MalformedVoucherError):
    """Mode byte is not a known sponsorship mode."""
    def __init__(self, mode: int):
        self.mode = mode
        super().__init__(f"Invalid paymaster mode: {mode}")


class ConfigTooShortError(MalformedVoucherError):
    """Fixed voucher body is shorter than the mode requires."""
    def __init__(self, length: int, required: int):
        self.length = length
        self.required = required
        super().__init__(f"Paymaster config too short: {length} < {required} bytes")


class SignatureLengthInvalidError(MalformedVoucherError):
    """Trailing signature is neither 64 nor 65 bytes."""
    def __init__(self, length: int):
        self.length = length
        super().__init__(f"Invalid signature length: {length} (expected 64 or 65)")


# Economic parameters
class EconomicParameterError(PaymasterError):
    """Base error for unusable ERC-20 sponsorship terms."""
    pass


class TokenAddressInvalidError(EconomicParameterError):
    """ERC-20 mode voucher names the zero address as fee token."""
    pass


class PriceInvalidError(EconomicParameterError):
    """ERC-20 mode voucher carries a zero exchange rate."""
    pass


# Authorization
class AuthorizationError(PaymasterError):
    """Base error for vouchers the registry does not stand behind."""
    pass


class SignatureInvalidError(AuthorizationError):
    """Signature does not recover to a registered signer."""
    pass


class ExpiredError(AuthorizationError):
    """Voucher validity window has closed."""
    def __init__(self, valid_until: int, now: int):
        self.valid_until = valid_until
        self.now = now
        super().__init__(f"Voucher expired at {valid_until} (now {now})")


class NotYetValidError(AuthorizationError):
    """Voucher validity window has not opened yet."""
    def __init__(self, valid_after: int, now: int):
        self.valid_after = valid_after
        self.now = now
        super().__init__(f"Voucher not valid before {valid_after} (now {now})")


# Access control
class AccessControlError(PaymasterError):
    """Base error for calls made by the wrong party."""
    pass


class CallerNotHostError(AccessControlError):
    """Validate/settle invoked by an address that is not a registered host."""
    def __init__(self, caller: str):
        self.caller = caller
        super().__init__(f"Caller is not a registered host: {caller}")


class NotOwnerError(AccessControlError):
    """Administrative call made by someone other than the owner."""
    def __init__(self, caller: str):
        self.caller = caller
        super().__init__(f"Caller is not the owner: {caller}")


class SelfCallOnlyError(AccessControlError):
    """Fund-transfer helper invoked by anyone but the engine itself."""
    def __init__(self, caller: str):
        self.caller = caller
        super().__init__(f"attempt_transfer is restricted to self-calls, got caller {caller}")


# Settlement
class SettlementError(PaymasterError):
    """Base error for post-execution settlement failures."""
    pass


class TransferFromFailedError(SettlementError):
    """Pulling the fee token from the sender into the treasury failed."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Token transferFrom failed: {reason}")


class ContextNotAuthorizedError(SettlementError):
    """Settle called for an operation that is not awaiting settlement."""
    pass


# Token ledger
class TokenTransferError(PaymasterError):
    """Token ledger refused a transfer (balance, allowance, unknown token)."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)
