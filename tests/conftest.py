"""
conftest.py - Shared pytest fixtures for safeledger tests

Provides common fixtures used across unit and functional tests:
- A token book with a plain token, a fee-on-transfer token and a fee token
- Funded user wallets
- Deployments (vault + tiers), with and without a fee-token requirement
- Clock and reconciliation helpers
"""

import pytest
from datetime import datetime, timedelta

from safeledger import (
    TokenBook, TokenSpec, DeploymentConfig, deploy,
    MAX_UINT256,
)


START = datetime(2025, 1, 1, 9, 30)

USERS = ("alice", "bob", "carol")


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def make_book() -> TokenBook:
    """Book with USDX (plain), TAXED (1% transfer fee) and FEE (fee token)."""
    book = TokenBook("test", initial_time=START)
    book.register_token(TokenSpec("USDX", "Dollar X"))
    book.register_token(TokenSpec("TAXED", "Taxed Token", fee_bps=100))
    book.register_token(TokenSpec("FEE", "Fee Token"))
    for user in USERS:
        book.register_wallet(user)
    return book


def fund_wallet(book: TokenBook, wallet: str, token: str, amount: int, spender: str = "vault") -> None:
    """Mint amount of token to wallet and approve spender for all of it."""
    book.mint(token, wallet, amount)
    book.approve(wallet, token, spender, MAX_UINT256)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def book():
    return make_book()


@pytest.fixture
def deployment(book):
    """Vault plus 1, 7 and 90 day tiers, no fee-token requirement."""
    return deploy(book, DeploymentConfig(owner="admin", tiers=(1, 7, 90)))


@pytest.fixture
def vault(deployment):
    return deployment.vault


@pytest.fixture
def safe(deployment):
    """The 7-day tier."""
    return deployment.safe(7)


@pytest.fixture
def fund(book):
    """Function funding a wallet and approving the vault."""
    def _fund(wallet, token, amount, spender="vault"):
        fund_wallet(book, wallet, token, amount, spender)
    return _fund


@pytest.fixture
def funded(book, fund):
    """Every user holds 1_000_000 USDX and TAXED, approved to the vault."""
    for user in USERS:
        fund(user, "USDX", 1_000_000)
        fund(user, "TAXED", 1_000_000)
    return book


@pytest.fixture
def advance(book):
    """Function moving the book's clock forward by a timedelta's keyword arguments."""
    def _advance(**delta):
        book.advance_time(book.current_time + timedelta(**delta))
        return book.current_time
    return _advance


@pytest.fixture
def reconciled(book, vault):
    """
    Function asserting a ledger's pool and the vault's anchor match held balances.

    Pass deposits=False after a withdraw, which does not touch the pool's
    deposit side, and anchor=False after a deposit, which does not touch the vault.
    """
    def _check(ledger, token, deposits=True, anchor=True):
        if deposits:
            assert ledger.pool(token).deposited == book.balance_of(token, ledger.address)
        if anchor:
            deposited, _ = vault.get_data(token)
            assert deposited == book.balance_of(token, vault.address)
    return _check


@pytest.fixture
def fee_deployment(book):
    """A 7-day tier requiring 100 FEE to deposit other tokens, with one free deposit."""
    return deploy(book, DeploymentConfig(
        owner="admin",
        fee_token="FEE",
        required_fee_amount=100,
        free_deposits=1,
        tiers=(7,),
        vault_address="vault",
    ))
