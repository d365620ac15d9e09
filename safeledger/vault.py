"""
vault.py - Shared custody for tokens waiting out their unlock delay

One Vault serves every ledger tier of a deployment. It holds tokens between
request and withdraw and keeps, per token, an anchor shared by all ledgers:

    deposited   the balance the vault believes it holds
    div_factor  cumulative drift of that balance since the last clean slate
    epoch       number of clean slates so far

The vault never computes drift itself. Ledgers observe the vault's real
balance, reconcile, and push the result with update_data / reset_data. The
vault only moves tokens and stores anchors, and both are restricted to the
ledgers registered at initialization.
"""

from __future__ import annotations
from dataclasses import replace
from typing import Dict, FrozenSet, Iterable, Optional, Tuple
import logging

from .access import Contract, entrypoint
from .core import (
    BASE_UNIT, EventType, VaultTokenAnchor,
    AlreadyInitialized, PreconditionFailed, Unauthorized,
)
from .scaling import check_uint

logger = logging.getLogger(__name__)


class Vault(Contract):
    """
    Custody contract shared by all ledger tiers.

    Attributes:
        ledgers: Allow-listed ledger addresses, fixed by initialize().
        free_deposits: Remaining deposits that may skip the fee-token requirement.
    """

    def __init__(self, book, address: str, owner: str, free_deposits: int = 0):
        super().__init__(book, address, owner)
        self.ledgers: FrozenSet[str] = frozenset()
        self.initialized = False
        self.free_deposits = check_uint(free_deposits, "free_deposits")
        self._anchors: Dict[str, VaultTokenAnchor] = {}

    # ========================================================================
    # READ ACCESSORS
    # ========================================================================

    def anchor(self, token: str) -> Optional[VaultTokenAnchor]:
        """Copy of the anchor for token, or None if it was never written."""
        anchor = self._anchors.get(token)
        return replace(anchor) if anchor is not None else None

    def get_data(self, token: str) -> Tuple[int, int]:
        """(deposited, div_factor) for token; (0, 0) when no anchor exists."""
        anchor = self._anchors.get(token)
        if anchor is None:
            return 0, 0
        return anchor.deposited, anchor.div_factor

    def epoch(self, token: str) -> int:
        """Number of times the anchor for token has been reset."""
        anchor = self._anchors.get(token)
        return anchor.epoch if anchor is not None else 0

    def is_ledger(self, address: str) -> bool:
        return address in self.ledgers

    def _require_ledger(self, caller: str) -> None:
        if caller not in self.ledgers:
            raise Unauthorized(f"{caller} is not a registered ledger")

    # ========================================================================
    # ADMINISTRATION
    # ========================================================================

    @entrypoint
    def initialize(self, caller: str, ledgers: Iterable[str]) -> None:
        """
        Register the ledgers allowed to move tokens and write anchors.

        One-time, owner only.

        Raises:
            AlreadyInitialized: If called a second time
            PreconditionFailed: If a ledger address is not a contract
        """
        self._require_owner(caller)
        if self.initialized:
            raise AlreadyInitialized(f"{self.address} already initialized")
        ledgers = frozenset(ledgers)
        if not ledgers:
            raise PreconditionFailed("no ledgers")
        for ledger in ledgers:
            if not self.book.is_contract(ledger):
                raise PreconditionFailed(f"{ledger} is not a contract")
        self.ledgers = ledgers
        self.initialized = True
        self.emit(EventType.INITIALIZE, ledgers=tuple(sorted(ledgers)))

    @entrypoint
    def setup(self, caller: str, free_deposits: int) -> None:
        """Set the number of remaining free deposits. Owner or manager."""
        self._require_manager(caller)
        self.free_deposits = check_uint(free_deposits, "free_deposits")
        self.emit(EventType.SETUP, free_deposits=free_deposits)

    @entrypoint
    def sweep_lost_tokens(self, caller: str, token: str) -> int:
        """
        Send the vault's balance of a token nobody has a claim on to the owner.

        Only allowed while the token's recorded deposited anchor is zero.
        """
        self._require_owner(caller)
        deposited, _ = self.get_data(token)
        if deposited != 0:
            raise PreconditionFailed(f"{token} has deposits")
        amount = self.book.balance_of(token, self.address)
        if amount == 0:
            raise PreconditionFailed("nothing to sweep")
        self.book.transfer(self.address, token, self.owner, amount)
        self.emit(EventType.LOST_TOKEN_SWEEP, token=token, amount=amount, recipient=self.owner)
        logger.warning("%s swept %d lost %s to %s", self.address, amount, token, self.owner)
        return amount

    # ========================================================================
    # LEDGER-ONLY OPERATIONS
    # ========================================================================

    @entrypoint
    def external_transfer(
        self,
        caller: str,
        token: str,
        sender: str,
        recipient: str,
        amount: int,
        fee_required: bool = False,
    ) -> int:
        """
        Move tokens on behalf of a registered ledger.

        If sender is the vault, tokens leave the vault. Otherwise they are pulled
        from sender using the allowance sender gave the vault; a pull into a
        ledger that required the fee token consumes one free deposit if any remain.

        Returns:
            The amount recipient actually received.
        """
        self._require_ledger(caller)
        check_uint(amount, "amount")
        before = self.book.balance_of(token, recipient)
        if sender == self.address:
            self.book.transfer(self.address, token, recipient, amount)
        else:
            self.book.transfer_from(self.address, token, sender, recipient, amount)
            if recipient != self.address and fee_required and self.free_deposits > 0:
                self.free_deposits -= 1
        received = self.book.balance_of(token, recipient) - before
        self.emit(
            EventType.TRANSFER,
            ledger=caller, token=token, sender=sender, recipient=recipient,
            amount=amount, received=received,
        )
        return received

    @entrypoint
    def update_data(self, caller: str, token: str, balance: int, div_factor: int) -> None:
        """
        Overwrite the anchor for token.

        ``deposited`` is always replaced. ``div_factor`` equal to BASE_UNIT clears
        the stored factor, any other positive value replaces it, and zero keeps
        whatever is stored.
        """
        self._require_ledger(caller)
        anchor = self._anchors.setdefault(token, VaultTokenAnchor())
        anchor.deposited = check_uint(balance, "balance")
        if div_factor == BASE_UNIT:
            anchor.div_factor = 0
        elif div_factor > 0:
            anchor.div_factor = check_uint(div_factor, "div_factor")
        self.emit(
            EventType.ANCHOR_UPDATE,
            ledger=caller, token=token, deposited=anchor.deposited, div_factor=anchor.div_factor,
        )

    @entrypoint
    def reset_data(self, caller: str, token: str) -> None:
        """
        Clear the anchor for token: the clean slate once the vault holds none of it.

        Starts a new epoch, which voids every request recorded before the reset.
        """
        self._require_ledger(caller)
        anchor = self._anchors.get(token)
        if anchor is not None:
            anchor.deposited = 0
            anchor.div_factor = 0
            anchor.epoch += 1
        self.emit(EventType.ANCHOR_RESET, ledger=caller, token=token, epoch=self.epoch(token))
