"""Shared fixtures: a vault on a simulated scheduler and an in-memory ledger."""

import pytest
from web3 import Web3

from vault.ledger import Ledger
from vault.machine import RecurringPaymentVault
from vault.scheduler import SimulatedScheduler

T0 = 1_700_000_000


def addr(n: int) -> str:
    return Web3.to_checksum_address(f"0x{n:040x}")


OWNER = addr(0xA11CE)
ALICE = addr(0xA1)
BOB = addr(0xB0B)
CAROL = addr(0xCA201)


@pytest.fixture
def scheduler():
    return SimulatedScheduler(start_time=T0)


@pytest.fixture
def ledger():
    lg = Ledger()
    lg.credit(OWNER, 1_000 * 10**8)
    lg.credit(BOB, 100 * 10**8)
    return lg


@pytest.fixture
def usdc(ledger):
    token = ledger.deploy_token("USDC", 6)
    token.mint(OWNER, 10_000 * 10**6)
    token.mint(BOB, 500 * 10**6)
    return token


@pytest.fixture
def vault(scheduler, ledger):
    return RecurringPaymentVault(owner=OWNER, scheduler=scheduler, ledger=ledger)
