"""
Core types for the time-locked custody ledger.

This module provides the foundational data structures shared by every component:
1. Constants: scaling base unit, unsigned integer bounds, the system wallet
2. Exceptions: LedgerError and domain-specific error types
3. Records: AccountTokenRecord, TokenPool, VaultTokenAnchor
4. Token book primitives: TokenSpec, Move, Transfer
5. Events: Event and EventType, the audit trail emitted by contracts

All quantities are non-negative Python ints standing in for unsigned
fixed-width integers. Nothing in this module mutates shared state.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional, Tuple, FrozenSet


# ============================================================================
# CONSTANTS
# ============================================================================

# Fixed-point unit of every scaling factor. A factor equal to BASE_UNIT
# means "no drift since the record was last normalized".
BASE_UNIT = 10 ** 36

# Largest value an unsigned 256-bit word can hold. Also used as the
# "unlimited" allowance that is never decremented.
MAX_UINT256 = 2 ** 256 - 1

# Reserved wallet for externally-caused supply changes (mints, rebases,
# transfer fees). It is exempt from balance validation.
SYSTEM_WALLET = "system"

# Transfer fees are expressed in basis points of the moved quantity.
FEE_BPS_DENOMINATOR = 10_000


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Mapping from token symbol to quantity held in a single wallet.
BalanceMap = Dict[str, int]

# (account, token) composite key of the per-account table.
AccountKey = Tuple[str, str]


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    pass


class PreconditionFailed(LedgerError):
    """Raised when an operation is called in a state that does not allow it."""
    pass


class ConsistencyError(LedgerError):
    """Raised when recorded totals contradict observed balances beyond repair."""
    pass


class Unauthorized(LedgerError):
    """Raised when the caller lacks the role an operation requires."""
    pass


class AlreadyInitialized(LedgerError):
    """Raised by a one-time initialization call made a second time."""
    pass


class ReentrancyError(LedgerError):
    """Raised when a contract entry point is entered while another is running."""
    pass


class ArithmeticOverflow(LedgerError):
    """Raised when an intermediate result does not fit in an unsigned 256-bit word."""
    pass


class InsufficientFunds(LedgerError):
    """Raised when a transfer would take a wallet balance below zero."""
    pass


class InsufficientAllowance(LedgerError):
    """Raised when a spender tries to move more than it was approved for."""
    pass


class TokenNotRegistered(LedgerError):
    """Raised when operating on a token that was never registered with the book."""
    pass


class WalletNotRegistered(LedgerError):
    """Raised when operating on a wallet that was never registered with the book."""
    pass


# ============================================================================
# ENUMS
# ============================================================================

class RequestOutcome(Enum):
    """
    Outcome of a withdrawal request.

    REQUESTED: Tokens moved to the vault and the unlock timer started.
    NOTHING_TO_REQUEST: The account's deposit normalized down to zero. Its
                        stale fields were cleared and the call committed,
                        but nothing was requested.
    """
    REQUESTED = "requested"
    NOTHING_TO_REQUEST = "nothing_to_request"


class EventType(Enum):
    """Kinds of events emitted by the ledger and vault contracts."""
    DEPOSIT = "deposit"
    REQUEST = "request"
    CANCEL = "cancel"
    WITHDRAW = "withdraw"
    ORPHAN_SWEEP = "orphan_sweep"
    TRANSFER = "transfer"
    ANCHOR_UPDATE = "anchor_update"
    ANCHOR_RESET = "anchor_reset"
    SETUP = "setup"
    INITIALIZE = "initialize"
    MANAGER = "manager"
    LOST_TOKEN_SWEEP = "lost_token_sweep"


# ============================================================================
# STATE RECORDS
# ============================================================================

@dataclass(slots=True)
class AccountTokenRecord:
    """
    Per-account, per-token state owned by a Ledger.

    Attributes:
        deposited: Amount currently credited to the account in the pool.
        deposited_scale: Pool scale in effect when ``deposited`` was last normalized.
        requested: Amount in the active withdrawal request.
        requested_scale: Vault factor in effect when ``requested`` was last normalized.
        unlock_at: When the pending request becomes withdrawable, or the last
            deposit time when no request is pending. None once cleared.
        fee_rate: Fee-token amount required at the account's last deposit.
        deposited_epoch: Pool deposit epoch ``deposited`` belongs to.
        requested_epoch: Vault anchor epoch ``requested`` belongs to.

    An amount recorded in an older epoch than the current one is worth nothing:
    the pool or anchor it was a share of has since been emptied and restarted.
    """
    deposited: int = 0
    deposited_scale: int = 0
    requested: int = 0
    requested_scale: int = 0
    unlock_at: Optional[datetime] = None
    fee_rate: int = 0
    deposited_epoch: int = 0
    requested_epoch: int = 0

    def clear_deposit(self) -> None:
        self.deposited = 0
        self.deposited_scale = 0

    def clear_request(self) -> None:
        self.requested = 0
        self.requested_scale = 0
        self.unlock_at = None


@dataclass(slots=True)
class TokenPool:
    """
    Ledger-wide state for one token.

    ``deposited`` anchors the ledger's held balance of the token and
    ``requested`` is the ledger's share of what sits in the vault.
    ``deposited_epoch`` counts how often the deposit side was emptied and
    restarted; ``requested_epoch`` is the vault anchor epoch ``requested``
    was last reconciled in.
    """
    deposited: int = 0
    deposited_scale: int = 0
    requested: int = 0
    requested_scale: int = 0
    disabled: bool = False
    approved: bool = False
    deposited_epoch: int = 0
    requested_epoch: int = 0

    def reset_deposits(self) -> None:
        """Empty the deposit side and start a new epoch for it."""
        self.deposited = 0
        self.deposited_scale = 0
        self.deposited_epoch += 1


@dataclass(slots=True)
class VaultTokenAnchor:
    """
    Vault-wide state for one token, shared by every ledger holding it.

    ``epoch`` advances on every reset, so requests made before it can be told apart.
    """
    deposited: int = 0
    div_factor: int = 0
    epoch: int = 0

    def is_clean(self) -> bool:
        return self.deposited == 0 and self.div_factor == 0


# ============================================================================
# TOKEN BOOK PRIMITIVES
# ============================================================================

@dataclass(frozen=True, slots=True)
class TokenSpec:
    """
    Definition of a fungible token registered with the book.

    Attributes:
        symbol: Token identifier, also used as the token's contract address.
        name: Human-readable name.
        fee_bps: Share of each transfer diverted to the system wallet, in
            basis points. Non-zero values model fee-on-transfer tokens.
    """
    symbol: str
    name: str
    fee_bps: int = 0

    def __post_init__(self):
        if not self.symbol or not self.symbol.strip():
            raise ValueError("Token symbol cannot be empty")
        if not 0 <= self.fee_bps <= FEE_BPS_DENOMINATOR:
            raise ValueError(f"fee_bps must be within [0, {FEE_BPS_DENOMINATOR}], got {self.fee_bps}")

    def transfer_fee(self, quantity: int) -> int:
        return quantity * self.fee_bps // FEE_BPS_DENOMINATOR


@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of a token between two wallets.

    Attributes:
        quantity: Amount to transfer (positive int).
        token: Symbol of the token being transferred.
        source: Wallet debited.
        dest: Wallet credited.
        reason: Short label for the audit trail ("transfer", "fee", "rebase").
    """
    quantity: int
    token: str
    source: str
    dest: str
    reason: str

    def __post_init__(self):
        if not self.source or not self.dest:
            raise ValueError("Move source and dest cannot be empty")
        if not self.token:
            raise ValueError("Move token cannot be empty")
        if not isinstance(self.quantity, int) or isinstance(self.quantity, bool):
            raise ValueError(f"Move quantity must be int, got {type(self.quantity)}")
        if self.quantity <= 0:
            raise ValueError(f"Move quantity must be positive, got {self.quantity}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.token}: {self.source}→{self.dest})"


@dataclass(frozen=True, slots=True)
class Transfer:
    """
    An executed, immutable record of token movements.

    Attributes:
        moves: Moves applied together.
        exec_id: Unique execution identifier (book + sequence + time).
        execution_time: Logical time the moves were applied.
        sequence_number: Monotonic sequence within the book.
        initiator: Address that initiated the transfer.
    """
    moves: Tuple[Move, ...]
    exec_id: str
    execution_time: datetime
    sequence_number: int
    initiator: str
    tokens: Optional[FrozenSet[str]] = None

    def __post_init__(self):
        if not self.moves:
            raise ValueError("Transfer must have moves")
        if self.tokens is None:
            object.__setattr__(self, 'tokens', frozenset(m.token for m in self.moves))

    def __repr__(self) -> str:
        moves = ", ".join(repr(m) for m in self.moves)
        return f"Transfer({self.exec_id}: {moves})"


# ============================================================================
# EVENTS
# ============================================================================

@dataclass(frozen=True)
class Event:
    """
    Immutable record of something a contract did, for off-chain observers.

    Events are part of contract state, so a rolled-back call leaves none behind.
    """
    event_type: EventType
    emitter: str
    timestamp: datetime
    data: Dict[str, Any] = field(default_factory=dict)

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def __repr__(self) -> str:
        fields = ", ".join(f"{k}={v!r}" for k, v in self.data.items())
        return f"Event({self.event_type.value}@{self.emitter}: {fields})"
