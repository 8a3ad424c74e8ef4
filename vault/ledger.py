"""
Ledger - account balances the vault moves value through

Two capabilities the vault consumes:
- Native currency accounts (tinybar), moved by transfer().
- ERC-20-style token contracts with approve / allowance / transferFrom.

The vault never edits balances directly. Every movement goes through
transfer() or TokenContract.transfer_from(), which refuse rather than
overdraw.
"""

import logging
from typing import Optional

from web3 import Web3

from .errors import InsufficientAllowanceError, InsufficientFundsError, NotFoundError, ValidationError
from .models import normalize_address

logger = logging.getLogger("spark.ledger")


def _check_amount(amount: int):
    if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
        raise ValidationError(f"invalid amount: {amount!r} (must be a non-negative integer)")


class TokenContract:
    """In-memory ERC-20: integer balances, per-(owner, spender) allowances."""

    def __init__(self, address: str, symbol: str, decimals: int):
        self.address = normalize_address(address)
        self.symbol = symbol
        self.decimals = decimals
        self._balances: dict[str, int] = {}
        self._allowances: dict[tuple[str, str], int] = {}
        self.total_supply: int = 0

    def balance_of(self, account: str) -> int:
        return self._balances.get(normalize_address(account), 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self._allowances.get((normalize_address(owner), normalize_address(spender)), 0)

    def mint(self, to: str, amount: int):
        _check_amount(amount)
        to = normalize_address(to)
        self._balances[to] = self._balances.get(to, 0) + amount
        self.total_supply += amount

    def approve(self, owner: str, spender: str, amount: int) -> bool:
        _check_amount(amount)
        self._allowances[(normalize_address(owner), normalize_address(spender))] = amount
        logger.debug(f"{self.symbol} approve {owner[:10]}... -> {spender[:10]}...: {amount}")
        return True

    def transfer(self, sender: str, to: str, amount: int) -> bool:
        _check_amount(amount)
        sender, to = normalize_address(sender), normalize_address(to)
        balance = self._balances.get(sender, 0)
        if balance < amount:
            raise InsufficientFundsError(
                f"{self.symbol} balance {balance} < {amount} for {sender[:10]}..."
            )
        self._balances[sender] = balance - amount
        self._balances[to] = self._balances.get(to, 0) + amount
        return True

    def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> bool:
        """Move `amount` from owner to `to` using spender's allowance. All or nothing."""
        _check_amount(amount)
        spender, owner, to = normalize_address(spender), normalize_address(owner), normalize_address(to)
        allowed = self._allowances.get((owner, spender), 0)
        if allowed < amount:
            raise InsufficientAllowanceError(
                f"{self.symbol} allowance {allowed} < {amount} ({owner[:10]}... -> {spender[:10]}...)"
            )
        balance = self._balances.get(owner, 0)
        if balance < amount:
            raise InsufficientFundsError(
                f"{self.symbol} balance {balance} < {amount} for {owner[:10]}..."
            )
        self._allowances[(owner, spender)] = allowed - amount
        self._balances[owner] = balance - amount
        self._balances[to] = self._balances.get(to, 0) + amount
        return True


class Ledger:
    """Native accounts plus the token contracts deployed on this ledger."""

    def __init__(self):
        self._native: dict[str, int] = {}
        self._tokens: dict[str, TokenContract] = {}
        self._token_counter: int = 0

    # ============================================================
    # NATIVE
    # ============================================================

    def balance_of(self, account: str) -> int:
        return self._native.get(normalize_address(account), 0)

    def credit(self, account: str, amount: int):
        """Mint native funds into an account (faucet / genesis)."""
        _check_amount(amount)
        account = normalize_address(account)
        self._native[account] = self._native.get(account, 0) + amount

    def transfer(self, sender: str, to: str, amount: int):
        _check_amount(amount)
        sender, to = normalize_address(sender), normalize_address(to)
        balance = self._native.get(sender, 0)
        if balance < amount:
            raise InsufficientFundsError(f"native balance {balance} < {amount} for {sender[:10]}...")
        self._native[sender] = balance - amount
        self._native[to] = self._native.get(to, 0) + amount

    # ============================================================
    # TOKENS
    # ============================================================

    def deploy_token(self, symbol: str, decimals: int, address: Optional[str] = None) -> TokenContract:
        if address is None:
            self._token_counter += 1
            address = Web3.to_checksum_address(f"0x{0x7000 + self._token_counter:040x}")
        token = TokenContract(address, symbol, decimals)
        self._tokens[token.address] = token
        logger.info(f"Token deployed: {symbol} ({decimals} decimals) at {token.address}")
        return token

    def token(self, address: str) -> TokenContract:
        try:
            return self._tokens[normalize_address(address)]
        except KeyError:
            raise NotFoundError(f"no token contract at {address}") from None

    def has_token(self, address: str) -> bool:
        try:
            return normalize_address(address) in self._tokens
        except ValidationError:
            return False
