"""
ledger.py - Rebase-aware time-locked deposit ledger

A Ledger is one unlock-delay tier. Accounts deposit a token, request a
withdrawal (tokens move to the shared Vault and a timer starts), then either
cancel (tokens return to their deposit) or withdraw once the delay elapsed.

The token balance the ledger or the vault actually holds may drift between
calls (rebasing, fee-on-transfer, airdrops). Drift is never assigned to a
single account. Instead each side keeps a scaling factor:

    pool.deposited_scale    drift of the ledger's own balance
    vault div_factor        drift of the vault's balance, shared by all ledgers

Every operation first reconciles the recorded totals against observed
balances (pool, then vault), then normalizes the calling account's amounts to
the current factors, and only then applies its own accounting change.

    NONE --deposit--> DEPOSITED --request--> REQUESTED --withdraw--> NONE
                          ^                      |
                          +-------cancel---------+

A deposit may arrive while a request is pending; a second request may not.
"""

from __future__ import annotations
from dataclasses import replace
from datetime import timedelta
from typing import Dict, Optional, Tuple
import logging

from .access import Contract, entrypoint
from .core import (
    # Types
    AccountKey, AccountTokenRecord, TokenPool, EventType, RequestOutcome,
    # Constants
    BASE_UNIT, MAX_UINT256,
    # Exceptions
    AlreadyInitialized, ConsistencyError, PreconditionFailed,
)
from .scaling import check_uint, effective_scale, normalize, rescale

logger = logging.getLogger(__name__)


class Ledger(Contract):
    """
    Deposit ledger for one unlock-delay tier.

    Attributes:
        unlock_delay: Time between request and the earliest withdraw.
        fee_token: Token an account must hold to deposit other tokens, or None.
        required_fee_amount: Fee-token balance required at deposit time.
        vault: Address of the shared Vault, set once by initialize().
        disabled: Global kill switch for new deposits.

    Example:
        ledger = Ledger(book, "safe_7d", owner="admin", unlock_delay=timedelta(days=7))
        ledger.initialize("admin", vault.address)
        ledger.deposit("alice", "USDX", 1_000)
        ledger.request("alice", "USDX")
        book.advance_time(book.current_time + timedelta(days=7))
        ledger.withdraw("alice", "USDX")
    """

    def __init__(
        self,
        book,
        address: str,
        owner: str,
        unlock_delay: timedelta,
        fee_token: Optional[str] = None,
        required_fee_amount: int = 0,
    ):
        super().__init__(book, address, owner)
        if unlock_delay < timedelta(0):
            raise ValueError(f"unlock_delay must not be negative, got {unlock_delay}")
        self.unlock_delay = unlock_delay
        self.fee_token = fee_token
        self.required_fee_amount = check_uint(required_fee_amount, "required_fee_amount")
        self.vault: Optional[str] = None
        self.disabled = False
        self._accounts: Dict[AccountKey, AccountTokenRecord] = {}
        self._pools: Dict[str, TokenPool] = {}

    # ========================================================================
    # READ ACCESSORS
    # ========================================================================

    def account(self, account: str, token: str) -> Optional[AccountTokenRecord]:
        """Copy of the stored record for (account, token), or None if never created."""
        record = self._accounts.get((account, token))
        return replace(record) if record is not None else None

    def pool(self, token: str) -> Optional[TokenPool]:
        """Copy of the stored pool for token, or None if never created."""
        pool = self._pools.get(token)
        return replace(pool) if pool is not None else None

    def accounts(self, token: str) -> Dict[str, AccountTokenRecord]:
        """Copies of every stored record for token, keyed by account."""
        return {
            account: replace(record)
            for (account, t), record in self._accounts.items() if t == token
        }

    def claimable(self, account: str, token: str) -> Tuple[int, int]:
        """
        (deposited, requested) for an account as of now, without mutating anything.

        Applies the same reconciliation the next operation would, so pending
        drift of the ledger's or the vault's balance is already reflected.
        """
        record = self._accounts.get((account, token))
        pool = self._pools.get(token)
        if record is None or pool is None:
            return 0, 0

        held = self.book.balance_of(token, self.address)
        rebase = rescale(pool.deposited, pool.deposited_scale, held)
        stale = record.deposited_epoch != pool.deposited_epoch
        if stale or rebase.orphaned or (pool.deposited > 0 and held == 0):
            deposited = 0
        else:
            deposited = normalize(
                record.deposited, rebase.scale, record.deposited_scale, ceiling=rebase.total
            )

        requested = 0
        if record.requested > 0 and self.vault is not None:
            if record.requested_epoch != self._vault().epoch(token):
                return deposited, 0
            anchor_deposited, factor = self._vault().get_data(token)
            vault_held = self.book.balance_of(token, self.vault)
            vault_rebase = rescale(anchor_deposited, factor, vault_held)
            if vault_held > 0 and not vault_rebase.orphaned:
                current = effective_scale(vault_rebase.scale)
                pool_requested = normalize(
                    pool.requested, current, pool.requested_scale, ceiling=vault_rebase.total
                )
                requested = normalize(
                    record.requested, current, record.requested_scale, ceiling=pool_requested
                )
        return deposited, requested

    # ========================================================================
    # ADMINISTRATION
    # ========================================================================

    @entrypoint
    def initialize(self, caller: str, vault: str) -> None:
        """
        Wire the ledger to its vault. One-time, owner only.

        Raises:
            AlreadyInitialized: If a vault is already set
            PreconditionFailed: If vault is not a contract
        """
        self._require_owner(caller)
        if self.vault is not None:
            raise AlreadyInitialized(f"{self.address} already initialized")
        if not self.book.is_contract(vault):
            raise PreconditionFailed(f"{vault} is not a contract")
        self.vault = vault
        self.emit(EventType.INITIALIZE, vault=vault)

    @entrypoint
    def setup(
        self,
        caller: str,
        disabled: Optional[bool] = None,
        token: Optional[str] = None,
        token_disabled: Optional[bool] = None,
        required_fee_amount: Optional[int] = None,
    ) -> None:
        """
        Adjust runtime configuration. Owner or manager.

        Args:
            caller: Address making the call
            disabled: New global disabled flag, if given
            token: Token whose disabled flag to change
            token_disabled: New disabled flag for token
            required_fee_amount: New fee-token requirement, if given
        """
        self._require_manager(caller)
        if disabled is not None:
            self.disabled = disabled
        if token is not None and token_disabled is not None:
            self._pool_for_update(token).disabled = token_disabled
        if required_fee_amount is not None:
            self.required_fee_amount = check_uint(required_fee_amount, "required_fee_amount")
        self.emit(
            EventType.SETUP,
            disabled=self.disabled, token=token, token_disabled=token_disabled,
            required_fee_amount=self.required_fee_amount,
        )

    @entrypoint
    def sweep_lost_tokens(self, caller: str, token: str) -> int:
        """Send the ledger's balance of a token with no recorded deposits to the owner."""
        self._require_owner(caller)
        pool = self._pools.get(token)
        if pool is not None and pool.deposited != 0:
            raise PreconditionFailed(f"{token} has deposits")
        amount = self.book.balance_of(token, self.address)
        if amount == 0:
            raise PreconditionFailed("nothing to sweep")
        self.book.transfer(self.address, token, self.owner, amount)
        self.emit(EventType.LOST_TOKEN_SWEEP, token=token, amount=amount, recipient=self.owner)
        logger.warning("%s swept %d lost %s to %s", self.address, amount, token, self.owner)
        return amount

    # ========================================================================
    # ACCOUNT OPERATIONS
    # ========================================================================

    @entrypoint
    def deposit(self, caller: str, token: str, amount: int, receiver: Optional[str] = None) -> int:
        """
        Pull amount of token from caller and credit it to receiver.

        Args:
            caller: Depositor; must have approved the vault for at least amount
            token: Token to deposit
            amount: Nominal amount to pull
            receiver: Account credited (defaults to caller)

        Returns:
            The amount actually credited, which is less than amount for
            fee-on-transfer tokens.

        Raises:
            PreconditionFailed: If any deposit precondition does not hold
            ConsistencyError: If recorded deposits exist but the ledger holds none
        """
        receiver = receiver or caller
        if amount <= 0:
            raise ValueError(f"Deposit amount must be positive, got {amount}")
        vault = self._vault()
        if self.disabled:
            raise PreconditionFailed("disabled")
        existing = self._pools.get(token)
        if existing is not None and existing.disabled:
            raise PreconditionFailed("token disabled")
        if not self.book.is_token(token):
            raise PreconditionFailed("token is not a contract")
        if receiver == token or self.book.is_contract(receiver):
            raise PreconditionFailed("receiver is a contract")

        fee_required = self._fee_required(token)
        free_deposit = fee_required and vault.free_deposits > 0
        if fee_required and not free_deposit:
            if self.book.balance_of(self.fee_token, caller) < self.required_fee_amount:
                raise PreconditionFailed("fee token balance too low")
        if self.book.allowance(token, caller, vault.address) < amount:
            raise PreconditionFailed("insufficient allowance")
        if self.book.balance_of(token, caller) < amount:
            raise PreconditionFailed("insufficient balance")

        pool = self._pool_for_update(token)
        if pool.deposited > 0 and self.book.balance_of(token, self.address) == 0:
            logger.warning("%s: %d %s recorded but none held", self.address, pool.deposited, token)
            raise ConsistencyError("something went wrong")
        self._approve_vault(token, pool)
        self._sync_deposits(token, pool)
        if pool.deposited_scale == 0:
            pool.deposited_scale = BASE_UNIT

        record = self._record_for_update(receiver, token)
        self._normalize_deposit(record, pool)
        record.fee_rate = 0 if free_deposit else self.required_fee_amount

        before = self.book.balance_of(token, self.address)
        vault.external_transfer(self.address, token, caller, self.address, amount, fee_required)
        credited = self.book.balance_of(token, self.address) - before
        if credited <= 0:
            raise PreconditionFailed("nothing received")
        if credited != amount:
            logger.debug("%s: %s delivered %d of %d", self.address, token, credited, amount)

        record.deposited += credited
        pool.deposited += credited
        if record.requested == 0:
            record.unlock_at = self.now

        self.emit(EventType.DEPOSIT, receiver=receiver, depositor=caller, token=token, amount=credited)
        return credited

    @entrypoint
    def request(self, caller: str, token: str, amount: int = 0) -> RequestOutcome:
        """
        Move part or all of caller's deposit to the vault and start the unlock timer.

        An amount of 0, or more than the account's deposit, requests the whole deposit.

        Returns:
            RequestOutcome.REQUESTED, or RequestOutcome.NOTHING_TO_REQUEST when the
            deposit normalized down to zero (the cleanup still commits).

        Raises:
            PreconditionFailed: If the account has nothing deposited, already has
                a pending request, or no longer meets its fee-rate snapshot
        """
        if amount < 0:
            raise ValueError(f"Request amount must not be negative, got {amount}")
        vault = self._vault()
        record = self._accounts.get((caller, token))
        if record is None:
            raise PreconditionFailed("nothing deposited")
        self._check_fee_rate(caller, token, record)
        if record.requested > 0:
            raise PreconditionFailed("already requested")
        if record.deposited == 0:
            raise PreconditionFailed("nothing deposited")

        pool = self._pools[token]
        self._sync_deposits(token, pool)
        self._normalize_deposit(record, pool)
        if record.deposited == 0:
            record.clear_deposit()
            logger.info("%s: %s deposit of %s rounded to zero", self.address, token, caller)
            return RequestOutcome.NOTHING_TO_REQUEST

        anchor_deposited, factor = self._sync_vault(token, pool)
        self._sync_requested(token, pool, factor, anchor_deposited)

        if amount == 0 or amount > record.deposited:
            amount = record.deposited
        amount = min(amount, pool.deposited)

        pool.deposited -= amount
        if amount == record.deposited:
            record.clear_deposit()
        else:
            record.deposited -= amount
        if pool.deposited == 0:
            # whatever other records still show was rounded away
            pool.reset_deposits()

        before = self.book.balance_of(token, vault.address)
        vault.external_transfer(self.address, token, self.address, vault.address, amount)
        received = self.book.balance_of(token, vault.address) - before

        pool.requested += received
        record.requested = received
        record.requested_scale = factor
        record.requested_epoch = pool.requested_epoch
        record.unlock_at = self.now + self.unlock_delay
        vault.update_data(self.address, token, anchor_deposited + received, factor)

        self.emit(
            EventType.REQUEST,
            account=caller, token=token, amount=received, unlock_at=record.unlock_at,
        )
        return RequestOutcome.REQUESTED

    @entrypoint
    def cancel(self, caller: str, token: str) -> int:
        """
        Return caller's pending request to their deposit.

        Returns:
            The amount credited back to the deposit; 0 if the vault no longer
            held the token and the request was voided.

        Raises:
            PreconditionFailed: If there is no pending request
        """
        self._vault()
        record = self._accounts.get((caller, token))
        if record is None or record.requested == 0:
            raise PreconditionFailed("nothing to cancel")

        pool = self._pools[token]
        self._sync_deposits(token, pool)
        self._normalize_deposit(record, pool)

        amount, anchor_deposited, factor = self._claim_request(token, pool, record)
        if amount == 0:
            self.emit(EventType.CANCEL, account=caller, token=token, amount=0)
            return 0

        before = self.book.balance_of(token, self.address)
        self._release(token, pool, self.address, amount, anchor_deposited, factor)
        returned = self.book.balance_of(token, self.address) - before

        if pool.deposited_scale == 0:
            pool.deposited_scale = BASE_UNIT
        record.deposited_scale = pool.deposited_scale
        record.deposited += returned
        pool.deposited += returned

        self.emit(EventType.CANCEL, account=caller, token=token, amount=returned)
        return returned

    @entrypoint
    def withdraw(self, caller: str, token: str) -> int:
        """
        Pay out caller's pending request once its unlock time has been reached.

        The exact unlock instant is withdrawable.

        Returns:
            The amount caller received; 0 if the request reconciled to nothing.

        Raises:
            PreconditionFailed: If there is no pending request, the fee-rate
                snapshot is not met, or the unlock time is still in the future
        """
        self._vault()
        record = self._accounts.get((caller, token))
        if record is None or record.requested == 0:
            raise PreconditionFailed("nothing to withdraw")
        self._check_fee_rate(caller, token, record)
        if record.unlock_at is not None and record.unlock_at > self.now:
            raise PreconditionFailed("patience")

        pool = self._pools[token]
        amount, anchor_deposited, factor = self._claim_request(token, pool, record)
        if amount == 0:
            self.emit(EventType.WITHDRAW, account=caller, token=token, amount=0)
            return 0

        before = self.book.balance_of(token, caller)
        self._release(token, pool, caller, amount, anchor_deposited, factor)
        paid = self.book.balance_of(token, caller) - before

        self.emit(EventType.WITHDRAW, account=caller, token=token, amount=paid)
        return paid

    # ========================================================================
    # RECONCILIATION
    # ========================================================================

    def _sync_deposits(self, token: str, pool: TokenPool) -> None:
        """
        Bring pool.deposited in line with the ledger's held balance.

        Drift rescales pool.deposited_scale. A balance with no recorded deposits
        is swept to the owner. A balance drained to zero under recorded deposits
        empties the pool, so every deposit made before is worth nothing.
        """
        held = self.book.balance_of(token, self.address)
        if pool.deposited > 0 and held == 0:
            logger.warning("%s: %d %s recorded but none held", self.address, pool.deposited, token)
            pool.reset_deposits()
            return
        rebase = rescale(pool.deposited, pool.deposited_scale, held)
        if rebase.orphaned:
            self._sweep_orphan(token, self.address, held)
            return
        if rebase.changed:
            if rebase.scale == 0:
                raise ConsistencyError("something went wrong")
            logger.debug(
                "%s: %s deposits rebased %d -> %d", self.address, token, pool.deposited, rebase.total
            )
            pool.deposited = rebase.total
            pool.deposited_scale = rebase.scale

    def _normalize_deposit(self, record: AccountTokenRecord, pool: TokenPool) -> None:
        if record.deposited_epoch != pool.deposited_epoch:
            record.deposited = 0
            record.deposited_scale = pool.deposited_scale
            record.deposited_epoch = pool.deposited_epoch
        elif record.deposited_scale != pool.deposited_scale or record.deposited > pool.deposited:
            record.deposited = normalize(
                record.deposited, pool.deposited_scale, record.deposited_scale,
                ceiling=pool.deposited,
            )
            record.deposited_scale = pool.deposited_scale

    def _sync_vault(self, token: str, pool: TokenPool) -> Tuple[int, int]:
        """
        Reconcile the vault's anchor for token against the vault's held balance.

        Returns:
            (anchor deposited, current factor). The factor is never zero. An
            anchor deposited of zero means the vault holds nothing anyone can
            claim: the anchor and this pool's requested side were cleared.
        """
        vault = self._vault()
        anchor_deposited, factor = vault.get_data(token)
        held = self.book.balance_of(token, vault.address)

        if held > 0 and anchor_deposited == 0:
            self._sweep_orphan(token, vault.address, held)
            held = self.book.balance_of(token, vault.address)

        if held == 0:
            if anchor_deposited != 0 or factor != 0:
                vault.reset_data(self.address, token)
            pool.requested = 0
            pool.requested_scale = 0
            return 0, BASE_UNIT

        if anchor_deposited != held:
            rebase = rescale(anchor_deposited, factor, held)
            if rebase.scale == 0:
                raise ConsistencyError("something went wrong")
            logger.debug(
                "%s: vault %s rebased %d -> %d", self.address, token, anchor_deposited, rebase.total
            )
            vault.update_data(self.address, token, rebase.total, rebase.scale)
            anchor_deposited, factor = rebase.total, rebase.scale
        return anchor_deposited, effective_scale(factor)

    def _sync_requested(self, token: str, pool: TokenPool, factor: int, anchor_deposited: int) -> None:
        epoch = self._vault().epoch(token)
        if pool.requested_epoch != epoch:
            # the anchor was reset since this pool last requested
            pool.requested = 0
            pool.requested_scale = factor
            pool.requested_epoch = epoch
        elif pool.requested_scale != factor:
            if pool.requested > 0:
                pool.requested = normalize(
                    pool.requested, factor, pool.requested_scale, ceiling=anchor_deposited
                )
            pool.requested_scale = factor
        elif pool.requested > anchor_deposited:
            # another tier's release already took the shared rounding slack
            pool.requested = anchor_deposited

    def _claim_request(
        self, token: str, pool: TokenPool, record: AccountTokenRecord
    ) -> Tuple[int, int, int]:
        """
        Reconcile the vault side and take record's request out of the pool's view.

        Returns:
            (amount, anchor deposited, factor) where amount is the request
            normalized to the vault's current factor. The record's request
            fields are cleared either way. A request made before the anchor's
            last reset yields 0.
        """
        anchor_deposited, factor = self._sync_vault(token, pool)
        if anchor_deposited == 0 or record.requested_epoch != self._vault().epoch(token):
            record.clear_request()
            return 0, 0, factor
        self._sync_requested(token, pool, factor, anchor_deposited)
        amount = normalize(
            record.requested, factor, record.requested_scale, ceiling=pool.requested
        )
        record.clear_request()
        return amount, anchor_deposited, factor

    def _release(
        self, token: str, pool: TokenPool, recipient: str, amount: int,
        anchor_deposited: int, factor: int,
    ) -> None:
        """Send amount from the vault to recipient and settle the pool and anchor."""
        vault = self._vault()
        vault.external_transfer(self.address, token, vault.address, recipient, amount)

        pool.requested = pool.requested - amount if pool.requested > amount else 0
        if pool.requested == 0:
            pool.requested_scale = 0
        remaining = anchor_deposited - amount if anchor_deposited > amount else 0
        if remaining == 0 or self.book.balance_of(token, vault.address) == 0:
            vault.reset_data(self.address, token)
        else:
            vault.update_data(self.address, token, remaining, factor)

    def _sweep_orphan(self, token: str, holder: str, amount: int) -> None:
        """Send a balance nobody has a recorded claim on to the owner."""
        if holder == self.address:
            self.book.transfer(self.address, token, self.owner, amount)
            recipient = self.owner
        else:
            vault = self._vault()
            recipient = vault.owner
            vault.external_transfer(self.address, token, vault.address, recipient, amount)
        self.emit(EventType.ORPHAN_SWEEP, token=token, holder=holder, amount=amount, recipient=recipient)
        logger.warning("%s: swept %d orphaned %s from %s to %s", self.address, amount, token, holder, recipient)

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _vault(self):
        if self.vault is None:
            raise PreconditionFailed("not initialized")
        return self.book.contract(self.vault)

    def _pool_for_update(self, token: str) -> TokenPool:
        pool = self._pools.get(token)
        if pool is None:
            pool = self._pools[token] = TokenPool()
        return pool

    def _record_for_update(self, account: str, token: str) -> AccountTokenRecord:
        record = self._accounts.get((account, token))
        if record is None:
            record = self._accounts[(account, token)] = AccountTokenRecord()
        return record

    def _fee_required(self, token: str) -> bool:
        return self.fee_token is not None and self.required_fee_amount > 0 and token != self.fee_token

    def _check_fee_rate(self, caller: str, token: str, record: AccountTokenRecord) -> None:
        if record.fee_rate == 0 or self.fee_token is None or token == self.fee_token:
            return
        if self.book.balance_of(self.fee_token, caller) < record.fee_rate:
            raise PreconditionFailed("fee token balance too low")

    def _approve_vault(self, token: str, pool: TokenPool) -> None:
        """Grant the vault unlimited allowance over token, once, and verify it."""
        if pool.approved:
            return
        self.book.approve(self.address, token, self.vault, MAX_UINT256)
        if self.book.allowance(token, self.address, self.vault) != MAX_UINT256:
            raise ConsistencyError(f"vault approval for {token} did not take effect")
        pool.approved = True
