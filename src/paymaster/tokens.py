"""ERC-20 transfer-on-behalf primitive and an in-memory ledger."""

from __future__ import annotations

import threading
from typing import Protocol

from .codec import ZERO_ADDRESS, normalize_address
from .errors import TokenTransferError


class TokenTransferer(Protocol):
    """``transferFrom`` across any number of fee tokens."""

    def transfer_from(
        self,
        token: str,
        spender: str,
        owner: str,
        recipient: str,
        amount: int,
    ) -> None: ...


class Erc20Token:
    """In-memory ERC-20 balances and allowances with standard revert reasons."""

    def __init__(self, address: str, symbol: str = "TKN", decimals: int = 18):
        self.address = normalize_address(address)
        self.symbol = symbol
        self.decimals = decimals
        self._balances: dict[str, int] = {}
        self._allowances: dict[tuple[str, str], int] = {}
        self._lock = threading.Lock()

    def balance_of(self, owner: str) -> int:
        return self._balances.get(normalize_address(owner), 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self._allowances.get((normalize_address(owner), normalize_address(spender)), 0)

    def mint(self, to: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("amount must be >= 0")
        recipient = normalize_address(to)
        with self._lock:
            self._balances[recipient] = self._balances.get(recipient, 0) + amount

    def approve(self, owner: str, spender: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("amount must be >= 0")
        with self._lock:
            self._allowances[(normalize_address(owner), normalize_address(spender))] = amount

    def transfer_from(self, spender: str, owner: str, recipient: str, amount: int) -> None:
        """Move ``amount`` from ``owner`` to ``recipient``; all-or-nothing."""
        spender = normalize_address(spender)
        owner = normalize_address(owner)
        recipient = normalize_address(recipient)
        if amount < 0:
            raise TokenTransferError("ERC20: negative amount")
        if recipient == ZERO_ADDRESS:
            raise TokenTransferError("ERC20: transfer to the zero address")

        with self._lock:
            allowed = self._allowances.get((owner, spender), 0)
            if allowed < amount:
                raise TokenTransferError("ERC20: insufficient allowance")
            balance = self._balances.get(owner, 0)
            if balance < amount:
                raise TokenTransferError("ERC20: transfer amount exceeds balance")

            self._allowances[(owner, spender)] = allowed - amount
            self._balances[owner] = balance - amount
            self._balances[recipient] = self._balances.get(recipient, 0) + amount


class TokenDirectory:
    """Routes ``transfer_from`` calls to the ledger registered for each token."""

    def __init__(self, tokens: tuple[Erc20Token, ...] | list[Erc20Token] = ()):
        self._tokens: dict[str, Erc20Token] = {}
        for token in tokens:
            self.register(token)

    def register(self, token: Erc20Token) -> None:
        self._tokens[token.address] = token

    def get(self, address: str) -> Erc20Token:
        normalized = normalize_address(address)
        try:
            return self._tokens[normalized]
        except KeyError:
            raise TokenTransferError(f"Unknown token: {normalized}") from None

    def transfer_from(
        self,
        token: str,
        spender: str,
        owner: str,
        recipient: str,
        amount: int,
    ) -> None:
        self.get(token).transfer_from(spender, owner, recipient, amount)
