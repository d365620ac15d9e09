"""
Conservation Conformance Tests

INVARIANT: Recorded totals reconcile with held balances, and claims never
exceed what is held.

    after deposit / request / cancel on ledger L:   pool(L).deposited = balance(L)
    after request / cancel / withdraw:               anchor.deposited  = balance(vault)

    ∀ ledger L:  Σ_accounts claimable_deposited ≤ balance(L) + |accounts|
    Σ_L Σ_accounts claimable_requested ≤ balance(vault) + |ledgers| · (|accounts| + 1)

Within one rebase of a pool the bound is exact both ways:

    |Σ_accounts claimable_deposited - balance(L)| ≤ |accounts|

The slack terms bound per-holder rounding; nothing else can create value.
A record left over from before a pool or anchor was emptied claims nothing.
Tokens enter and leave only through transfers, so the book's double-entry
totals balance at every step.
"""

from hypothesis import given, settings, note
from hypothesis import strategies as st
from datetime import datetime, timedelta

from safeledger import (
    TokenBook, TokenSpec, DeploymentConfig, deploy,
    MAX_UINT256, RequestOutcome,
    PreconditionFailed, ConsistencyError,
)


LEDGER_DAYS = (1, 7)
ACCOUNTS = ("alice", "bob", "carol")
TOKENS = ("USDX", "TAXED")
HOLDERS = ("safe_1d", "safe_7d", "vault")

REJECTED = object()


# =============================================================================
# SETUP
# =============================================================================

def _deployment():
    book = TokenBook("conformance", initial_time=datetime(2025, 1, 1))
    book.register_token(TokenSpec("USDX", "Dollar X"))
    book.register_token(TokenSpec("TAXED", "Taxed Token", fee_bps=100))
    deployment = deploy(book, DeploymentConfig(owner="admin", tiers=LEDGER_DAYS))
    for account in ACCOUNTS:
        book.register_wallet(account)
        for token in TOKENS:
            book.mint(token, account, 10_000_000)
            book.approve(account, token, deployment.vault.address, MAX_UINT256)
    return book, deployment


# =============================================================================
# STRATEGIES FOR PROPERTY-BASED TESTING
# =============================================================================

days = st.sampled_from(LEDGER_DAYS)
account = st.sampled_from(ACCOUNTS)
token = st.sampled_from(TOKENS)

operation = st.one_of(
    st.tuples(st.just("deposit"), days, account, token, st.integers(1_000, 200_000)),
    st.tuples(st.just("request"), days, account, token, st.integers(0, 100_000)),
    st.tuples(st.just("cancel"), days, account, token),
    st.tuples(st.just("withdraw"), days, account, token),
    st.tuples(st.just("rebase"), st.sampled_from(HOLDERS), token, st.integers(80, 150)),
    # drains and collapses that empty a pool or the vault
    st.tuples(st.just("rebase"), st.sampled_from(HOLDERS), token, st.sampled_from((0, 1, 3))),
    st.tuples(st.just("wait"), st.integers(0, 200)),
)


# =============================================================================
# HELPERS
# =============================================================================

def _apply(book, deployment, op):
    """Run one operation. Returns its result, or REJECTED when the contracts refused it."""
    kind = op[0]
    if kind == "wait":
        book.advance_time(book.current_time + timedelta(hours=op[1]))
        return None
    if kind == "rebase":
        _, holder, tok, percent = op
        held = book.balance_of(tok, holder)
        return book.rebase(tok, holder, held * percent // 100)

    _, tier, who, tok = op[:4]
    safe = deployment.safe(tier)
    try:
        if kind == "deposit":
            return safe.deposit(who, tok, op[4])
        if kind == "request":
            return safe.request(who, tok, op[4])
        if kind == "cancel":
            return safe.cancel(who, tok)
        return safe.withdraw(who, tok)
    except (PreconditionFailed, ConsistencyError) as exc:
        note(f"{op} rejected: {exc}")
        return REJECTED


def _check_reconciled(book, deployment, op, result) -> None:
    kind = op[0]
    if result is REJECTED or kind not in ("deposit", "request", "cancel", "withdraw"):
        return
    safe, tok = deployment.safe(op[1]), op[3]
    vault = deployment.vault
    if kind != "withdraw":
        assert safe.pool(tok).deposited == book.balance_of(tok, safe.address)
    # a request that rounded to nothing never looks at the vault
    if kind != "deposit" and result != RequestOutcome.NOTHING_TO_REQUEST:
        assert vault.get_data(tok)[0] == book.balance_of(tok, vault.address)


def _check_claims_covered(book, deployment) -> None:
    vault = deployment.vault
    for tok in TOKENS:
        total_requested = 0
        for safe in deployment.ledgers():
            held = book.balance_of(tok, safe.address)
            total_deposited = 0
            for who in ACCOUNTS:
                deposited, requested = safe.claimable(who, tok)
                assert deposited <= held
                total_deposited += deposited
                total_requested += requested
            assert total_deposited <= held + len(ACCOUNTS)
        slack = len(LEDGER_DAYS) * (len(ACCOUNTS) + 1)
        assert total_requested <= book.balance_of(tok, vault.address) + slack


def _exit_everyone(book, deployment) -> None:
    """Withdraw every pending request, then request and withdraw every deposit."""
    wait = timedelta(days=max(LEDGER_DAYS))
    for safe in deployment.ledgers():
        for who in ACCOUNTS:
            for tok in TOKENS:
                record = safe.account(who, tok)
                if record is not None and record.requested > 0:
                    book.advance_time(book.current_time + wait)
                    safe.withdraw(who, tok)
                if safe.claimable(who, tok)[0] > 0:
                    outcome = safe.request(who, tok)
                    if outcome == RequestOutcome.REQUESTED:
                        book.advance_time(book.current_time + wait)
                        safe.withdraw(who, tok)
                assert safe.claimable(who, tok) == (0, 0)


# =============================================================================
# PROPERTIES
# =============================================================================

class TestConservationProperties:
    """Property-based reconciliation and coverage tests."""

    @given(st.lists(operation, min_size=1, max_size=30))
    @settings(max_examples=60, deadline=None)
    def test_pools_and_anchors_reconcile(self, ops):
        """
        PROPERTY: Every committed operation leaves the touched pool and the
        vault anchor equal to the balances actually held.
        """
        book, deployment = _deployment()
        for op in ops:
            result = _apply(book, deployment, op)
            _check_reconciled(book, deployment, op, result)

    @given(st.lists(operation, min_size=1, max_size=30))
    @settings(max_examples=60, deadline=None)
    def test_claims_never_exceed_holdings(self, ops):
        """
        PROPERTY: What accounts can claim is covered by what the ledgers and
        the vault hold, up to rounding.
        """
        book, deployment = _deployment()
        for op in ops:
            _apply(book, deployment, op)
            _check_claims_covered(book, deployment)
            assert book.verify_conservation()['valid']

    @given(st.lists(operation, min_size=1, max_size=25))
    @settings(max_examples=40, deadline=None)
    def test_everyone_can_exit(self, ops):
        """
        PROPERTY: After any history, every account can request and withdraw
        everything it can claim, ending with nothing left to claim.
        """
        book, deployment = _deployment()
        for op in ops:
            _apply(book, deployment, op)
        _exit_everyone(book, deployment)
        assert book.verify_conservation()['valid']

    @given(
        st.lists(st.tuples(account, st.integers(1, 1_000_000)), min_size=1, max_size=6),
        st.integers(0, 3_000_000),
    )
    @settings(max_examples=100, deadline=None)
    def test_claims_match_pool_after_rebase(self, deposits, new_balance):
        """
        PROPERTY: After one rebase of a ledger, what its accounts can claim
        sums to what it holds within one unit per account, and requesting
        everything moves exactly the requested total to the vault.
        """
        book, deployment = _deployment()
        safe = deployment.safe(7)
        for who, amount in deposits:
            safe.deposit(who, "USDX", amount)
        book.rebase("USDX", safe.address, new_balance)
        holders = sorted({who for who, _ in deposits})

        claims = sum(safe.claimable(who, "USDX")[0] for who in holders)
        assert abs(claims - new_balance) <= len(holders)

        for who in holders:
            safe.request(who, "USDX")
        requested = sum(safe.claimable(who, "USDX")[1] for who in holders)
        left = book.balance_of("USDX", safe.address)
        assert requested == book.balance_of("USDX", deployment.vault.address)
        assert requested + left == new_balance
        assert left <= len(holders)
        assert safe.pool("USDX").deposited == left


class TestConservationExamples:

    def test_round_trip_without_drift_returns_everything(self):
        book, deployment = _deployment()
        safe = deployment.safe(7)
        for who, amount in zip(ACCOUNTS, (1_000, 2_500, 40_000)):
            safe.deposit(who, "USDX", amount)
        _exit_everyone(book, deployment)
        for who in ACCOUNTS:
            assert book.balance_of("USDX", who) == 10_000_000
        assert book.balance_of("USDX", deployment.vault.address) == 0
        assert book.balance_of("USDX", safe.address) == 0

    def test_drift_split_across_tiers_and_accounts(self):
        book, deployment = _deployment()
        fast, slow = deployment.safe(1), deployment.safe(7)
        fast.deposit("alice", "USDX", 1_000)
        fast.deposit("bob", "USDX", 2_000)
        slow.deposit("carol", "USDX", 3_000)
        fast.request("alice", "USDX")
        slow.request("carol", "USDX")
        book.rebase("USDX", "vault", 6_000)
        book.rebase("USDX", fast.address, 3_000)
        _check_claims_covered(book, deployment)
        assert fast.claimable("alice", "USDX") == (0, 1_500)
        assert fast.claimable("bob", "USDX") == (3_000, 0)
        assert slow.claimable("carol", "USDX") == (0, 4_500)

    def test_drained_vault_with_requests_outstanding(self):
        book, deployment = _deployment()
        fast, slow = deployment.safe(1), deployment.safe(7)
        fast.deposit("alice", "USDX", 1_000)
        fast.request("alice", "USDX")
        slow.deposit("bob", "USDX", 2_000)
        slow.request("bob", "USDX", 500)
        book.rebase("USDX", "vault", 0)

        slow.deposit("carol", "USDX", 700)
        slow.request("carol", "USDX")
        _check_claims_covered(book, deployment)
        assert fast.claimable("alice", "USDX") == (0, 0)
        assert slow.claimable("bob", "USDX") == (1_500, 0)
        assert slow.claimable("carol", "USDX") == (0, 700)

        _exit_everyone(book, deployment)
        assert book.balance_of("USDX", "alice") == 10_000_000 - 1_000
        assert book.balance_of("USDX", "bob") == 10_000_000 - 500
        assert book.balance_of("USDX", "carol") == 10_000_000
        assert book.balance_of("USDX", deployment.vault.address) == 0
