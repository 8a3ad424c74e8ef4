"""Tests for native balances and the in-memory token contracts."""

import pytest

from conftest import ALICE, BOB, OWNER, addr
from vault.errors import InsufficientAllowanceError, InsufficientFundsError, NotFoundError, ValidationError
from vault.ledger import Ledger


class TestNative:
    """credit / transfer."""

    def test_transfer_moves_balance(self):
        ledger = Ledger()
        ledger.credit(ALICE, 100)
        ledger.transfer(ALICE, BOB, 40)
        assert ledger.balance_of(ALICE) == 60
        assert ledger.balance_of(BOB) == 40

    def test_overdraw_refused(self):
        ledger = Ledger()
        ledger.credit(ALICE, 10)
        with pytest.raises(InsufficientFundsError):
            ledger.transfer(ALICE, BOB, 11)
        assert ledger.balance_of(ALICE) == 10

    def test_negative_amount_rejected(self):
        ledger = Ledger()
        with pytest.raises(ValidationError):
            ledger.credit(ALICE, -1)

    def test_addresses_case_insensitive(self):
        ledger = Ledger()
        ledger.credit(ALICE.lower(), 5)
        assert ledger.balance_of(ALICE) == 5


class TestTokens:
    """approve / transfer_from semantics."""

    @pytest.fixture
    def token(self):
        ledger = Ledger()
        token = ledger.deploy_token("USDC", 6)
        token.mint(OWNER, 1_000)
        return token

    def test_deploy_assigns_distinct_addresses(self):
        ledger = Ledger()
        a = ledger.deploy_token("A", 6)
        b = ledger.deploy_token("B", 18)
        assert a.address != b.address
        assert ledger.token(a.address.lower()) is a
        assert ledger.has_token(b.address)
        assert not ledger.has_token("garbage")

    def test_deploy_at_fixed_address(self):
        ledger = Ledger()
        token = ledger.deploy_token("USDC", 6, address=addr(0x5555))
        assert token.address == addr(0x5555)

    def test_unknown_token(self):
        with pytest.raises(NotFoundError):
            Ledger().token(addr(0x9999))

    def test_transfer_from_consumes_allowance(self, token):
        token.approve(OWNER, BOB, 300)
        token.transfer_from(BOB, OWNER, ALICE, 200)
        assert token.balance_of(ALICE) == 200
        assert token.balance_of(OWNER) == 800
        assert token.allowance(OWNER, BOB) == 100

    def test_transfer_from_without_allowance(self, token):
        with pytest.raises(InsufficientAllowanceError):
            token.transfer_from(BOB, OWNER, ALICE, 1)

    def test_transfer_from_is_all_or_nothing(self, token):
        token.approve(OWNER, BOB, 5_000)
        with pytest.raises(InsufficientFundsError):
            token.transfer_from(BOB, OWNER, ALICE, 2_000)
        assert token.allowance(OWNER, BOB) == 5_000
        assert token.balance_of(OWNER) == 1_000
        assert token.balance_of(ALICE) == 0

    def test_plain_transfer(self, token):
        token.transfer(OWNER, ALICE, 1_000)
        assert token.balance_of(ALICE) == 1_000
        with pytest.raises(InsufficientFundsError):
            token.transfer(OWNER, ALICE, 1)
