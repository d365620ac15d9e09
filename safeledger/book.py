"""
book.py - Token book: the execution environment contracts run against

TokenBook is the only place token balances live. It models the external
collaborators of the custody contracts:

    - fungible tokens (balances, allowances, transfer / transfer_from / approve)
    - fee-on-transfer tokens (a share of each transfer goes to the system wallet)
    - rebasing and airdrops (balance drift not caused by any contract call)
    - the platform clock and the contract-account registry

Key responsibilities:
    - Validates and applies every balance change atomically (all moves of a
      transfer succeed or none do)
    - Keeps a double-entry audit trail: supply changes flow through SYSTEM_WALLET
    - Snapshots and restores its own state plus every attached contract's state,
      which is what makes contract entry points all-or-nothing
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Set, Optional, Tuple, Any
import copy
import logging

from .core import (
    # Types
    Move, Transfer, TokenSpec, BalanceMap,
    # Constants
    MAX_UINT256, SYSTEM_WALLET,
    # Exceptions
    InsufficientFunds, InsufficientAllowance,
    TokenNotRegistered, WalletNotRegistered,
)
from .scaling import check_uint

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BookSnapshot:
    """Opaque copy of book and contract state taken by TokenBook.snapshot()."""
    balances: Dict[str, Dict[str, int]]
    allowances: Dict[Tuple[str, str, str], int]
    log_length: int
    next_sequence: int
    contract_states: Dict[str, Dict[str, Any]]


class TokenBook:
    """
    Wallet x token balance book with allowances, a logical clock and an audit trail.

    Design Principles:
        - Always validates: a transfer that would overdraw any wallet other than
          SYSTEM_WALLET is rejected before anything is applied.
        - Always logs: every applied transfer is recorded in transfer_log.

    Thread Safety:
        Not thread-safe. Calls are serialized, one transaction at a time.

    Example:
        book = TokenBook("main")
        book.register_token(TokenSpec("USDX", "Dollar X"))
        book.register_wallet("alice")
        book.register_wallet("bob")
        book.mint("USDX", "alice", 1_000)
        book.transfer("alice", "USDX", "bob", 100)
    """

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = False,
    ):
        """
        Create a token book.

        Args:
            name: Book identifier
            initial_time: Starting time for the clock (default: 1970-01-01)
            verbose: Log every applied transfer at INFO instead of DEBUG
        """
        self.name = name
        self.balances: Dict[str, Dict[str, int]] = {}
        self.tokens: Dict[str, TokenSpec] = {}
        self.registered_wallets: Set[str] = set()
        self.contract_wallets: Set[str] = set()
        self.allowances: Dict[Tuple[str, str, str], int] = {}
        self.transfer_log: List[Transfer] = []
        self.contracts: Dict[str, Any] = {}
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self.verbose = verbose
        self._next_sequence: int = 0

        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = {}

    # ========================================================================
    # READ-ONLY QUERIES
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the book."""
        return self._current_time

    def balance_of(self, token: str, address: str) -> int:
        """
        Balance of a token held by an address.

        Raises:
            TokenNotRegistered: If token is not registered
            WalletNotRegistered: If address is not registered
        """
        self._require_token(token)
        self._require_wallet(address)
        return self.balances[address].get(token, 0)

    def allowance(self, token: str, owner: str, spender: str) -> int:
        """Amount spender may still move out of owner's balance."""
        self._require_token(token)
        return self.allowances.get((token, owner, spender), 0)

    def get_wallet_balances(self, address: str) -> BalanceMap:
        """Get all balances for a wallet."""
        self._require_wallet(address)
        return dict(self.balances[address])

    def total_supply(self, token: str) -> int:
        """Circulating supply: the sum of all balances outside SYSTEM_WALLET."""
        self._require_token(token)
        return sum(
            self.balances[w].get(token, 0)
            for w in sorted(self.registered_wallets) if w != SYSTEM_WALLET
        )

    def verify_conservation(self) -> Dict[str, Any]:
        """
        Verify that every token's balances, including SYSTEM_WALLET, sum to zero.

        Supply enters and leaves only through SYSTEM_WALLET, so its (negative)
        balance mirrors the circulating supply exactly.

        Returns:
            Dict with keys:
            - 'valid': bool - True if all tokens balance
            - 'supplies': Dict[str, int] - circulating supply per token
            - 'discrepancies': List[Dict] - tokens whose books do not balance
        """
        supplies = {}
        discrepancies = []
        for token in self.tokens:
            circulating = self.total_supply(token)
            supplies[token] = circulating
            net = circulating + self.balances[SYSTEM_WALLET].get(token, 0)
            if net != 0:
                discrepancies.append({'token': token, 'net': net})
        return {
            'valid': len(discrepancies) == 0,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    def is_registered(self, address: str) -> bool:
        """Check if a wallet is registered."""
        return address in self.registered_wallets

    def is_contract(self, address: str) -> bool:
        """True for token contracts and attached custody contracts."""
        return address in self.contract_wallets

    def is_token(self, address: str) -> bool:
        return address in self.tokens

    def contract(self, address: str) -> Any:
        """Return the contract object attached at address."""
        if address not in self.contracts:
            raise WalletNotRegistered(f"No contract attached at {address}")
        return self.contracts[address]

    def list_wallets(self) -> Set[str]:
        """List all registered wallet addresses."""
        return self.registered_wallets.copy()

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the logical clock. Time can only move forward.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # REGISTRATION
    # ========================================================================

    def register_wallet(self, address: str, contract: bool = False) -> str:
        """
        Register a new wallet.

        Args:
            address: Unique wallet address
            contract: Mark the address as a contract account

        Raises:
            ValueError: If the wallet is already registered
        """
        if address in self.registered_wallets:
            raise ValueError(f"Wallet {address} already registered")
        self.registered_wallets.add(address)
        self.balances[address] = {}
        if contract:
            self.contract_wallets.add(address)
        return address

    def register_token(self, spec: TokenSpec) -> str:
        """
        Register a token. Its symbol doubles as its contract address.

        Raises:
            ValueError: If the token is already registered
        """
        if spec.symbol in self.tokens:
            raise ValueError(f"Token {spec.symbol} already registered")
        self.tokens[spec.symbol] = spec
        if spec.symbol not in self.registered_wallets:
            self.register_wallet(spec.symbol, contract=True)
        else:
            self.contract_wallets.add(spec.symbol)
        fee = f", fee={spec.fee_bps}bps" if spec.fee_bps else ""
        logger.debug("registered token %s (%s)%s", spec.symbol, spec.name, fee)
        return spec.symbol

    def attach(self, contract: Any) -> None:
        """Register a custody contract under its address so snapshots include it."""
        address = contract.address
        if address in self.contracts:
            raise ValueError(f"Contract {address} already attached")
        if address not in self.registered_wallets:
            self.register_wallet(address, contract=True)
        else:
            self.contract_wallets.add(address)
        self.contracts[address] = contract

    # ========================================================================
    # TOKEN OPERATIONS
    # ========================================================================

    def approve(self, owner: str, token: str, spender: str, amount: int) -> bool:
        """Set spender's allowance over owner's balance. MAX_UINT256 is unlimited."""
        self._require_token(token)
        self._require_wallet(owner)
        self.allowances[(token, owner, spender)] = check_uint(amount, "allowance")
        return True

    def transfer(self, caller: str, token: str, to: str, amount: int) -> bool:
        """
        Move amount of token from caller to to.

        Fee-on-transfer tokens deliver amount minus the fee; the caller is
        always debited the full amount.

        Raises:
            InsufficientFunds: If caller's balance is too low
        """
        self._transfer(caller, token, caller, to, amount)
        return True

    def transfer_from(self, spender: str, token: str, owner: str, to: str, amount: int) -> bool:
        """
        Move amount of token from owner to to on behalf of spender.

        Raises:
            InsufficientAllowance: If spender's allowance is too low
            InsufficientFunds: If owner's balance is too low
        """
        self._require_token(token)
        key = (token, owner, spender)
        allowed = self.allowances.get(key, 0)
        if allowed < amount:
            raise InsufficientAllowance(
                f"{spender} may move {allowed} {token} from {owner}, needs {amount}"
            )
        self._transfer(spender, token, owner, to, amount)
        if allowed != MAX_UINT256:
            self.allowances[key] = allowed - amount
        return True

    def mint(self, token: str, to: str, amount: int) -> None:
        """Issue new supply to a wallet (funding, airdrops)."""
        self._apply([Move(amount, token, SYSTEM_WALLET, to, "mint")], initiator=SYSTEM_WALLET)

    def rebase(self, token: str, holder: str, new_balance: int) -> int:
        """
        Set a single holder's balance as an external rebase would.

        Returns:
            The signed change applied to the holder's balance.
        """
        check_uint(new_balance, "new_balance")
        delta = new_balance - self.balance_of(token, holder)
        if delta > 0:
            self._apply([Move(delta, token, SYSTEM_WALLET, holder, "rebase")], initiator=SYSTEM_WALLET)
        elif delta < 0:
            self._apply([Move(-delta, token, holder, SYSTEM_WALLET, "rebase")], initiator=SYSTEM_WALLET)
        return delta

    def rebase_supply(self, token: str, numerator: int, denominator: int) -> None:
        """Scale every holder's balance by numerator / denominator (truncated)."""
        if numerator < 0 or denominator <= 0:
            raise ValueError("rebase ratio must be non-negative with a positive denominator")
        self._require_token(token)
        moves = []
        for wallet in sorted(self.registered_wallets):
            if wallet == SYSTEM_WALLET:
                continue
            current = self.balances[wallet].get(token, 0)
            if current == 0:
                continue
            delta = current * numerator // denominator - current
            if delta > 0:
                moves.append(Move(delta, token, SYSTEM_WALLET, wallet, "rebase"))
            elif delta < 0:
                moves.append(Move(-delta, token, wallet, SYSTEM_WALLET, "rebase"))
        if moves:
            self._apply(moves, initiator=SYSTEM_WALLET)

    # ========================================================================
    # SNAPSHOT / RESTORE
    # ========================================================================

    def snapshot(self) -> BookSnapshot:
        """
        Capture balances, allowances and the state of every attached contract.

        The transfer log is append-only, so only its length is recorded.
        """
        return BookSnapshot(
            balances=copy.deepcopy(self.balances),
            allowances=dict(self.allowances),
            log_length=len(self.transfer_log),
            next_sequence=self._next_sequence,
            contract_states={
                address: contract.export_state()
                for address, contract in self.contracts.items()
            },
        )

    def restore(self, snapshot: BookSnapshot) -> None:
        """Roll the book and all attached contracts back to a snapshot."""
        self.balances = copy.deepcopy(snapshot.balances)
        self.allowances = dict(snapshot.allowances)
        del self.transfer_log[snapshot.log_length:]
        self._next_sequence = snapshot.next_sequence
        for address, state in snapshot.contract_states.items():
            self.contracts[address].import_state(state)

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def _require_token(self, token: str) -> None:
        if token not in self.tokens:
            raise TokenNotRegistered(f"Token {token} not registered")

    def _require_wallet(self, address: str) -> None:
        if address not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {address} not registered")

    def _transfer(self, initiator: str, token: str, source: str, dest: str, amount: int) -> None:
        self._require_token(token)
        check_uint(amount, "amount")
        if amount == 0 or source == dest:
            return
        fee = self.tokens[token].transfer_fee(amount)
        moves = []
        if amount - fee > 0:
            moves.append(Move(amount - fee, token, source, dest, "transfer"))
        if fee > 0:
            moves.append(Move(fee, token, source, SYSTEM_WALLET, "fee"))
        self._apply(moves, initiator=initiator)

    def _generate_exec_id(self, sequence: int) -> str:
        """
        Generate a unique execution ID.

        Format: exec:{book_name}:{sequence:012d}:{timestamp_micros}
        """
        micros = int(self._current_time.timestamp() * 1_000_000)
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def _validate(self, moves: List[Move]) -> None:
        """
        Check registration and that no wallet other than SYSTEM_WALLET goes negative.

        Raises:
            TokenNotRegistered, WalletNotRegistered, InsufficientFunds
        """
        net: Dict[Tuple[str, str], int] = {}
        for move in moves:
            self._require_token(move.token)
            self._require_wallet(move.source)
            self._require_wallet(move.dest)
            net[(move.source, move.token)] = net.get((move.source, move.token), 0) - move.quantity
            net[(move.dest, move.token)] = net.get((move.dest, move.token), 0) + move.quantity

        for (wallet, token), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue
            proposed = self.balances[wallet].get(token, 0) + delta
            if proposed < 0:
                raise InsufficientFunds(
                    f"{wallet} {token}: balance {self.balances[wallet].get(token, 0)} "
                    f"cannot cover {-delta}"
                )
            check_uint(proposed, f"{wallet} {token} balance")

    def _apply(self, moves: List[Move], initiator: str) -> Transfer:
        """Validate, apply and log a group of moves atomically."""
        self._validate(moves)

        sequence = self._next_sequence
        self._next_sequence += 1
        record = Transfer(
            moves=tuple(moves),
            exec_id=self._generate_exec_id(sequence),
            execution_time=self._current_time,
            sequence_number=sequence,
            initiator=initiator,
        )

        for move in record.moves:
            src = self.balances[move.source]
            dst = self.balances[move.dest]
            src[move.token] = src.get(move.token, 0) - move.quantity
            dst[move.token] = dst.get(move.token, 0) + move.quantity

        self.transfer_log.append(record)
        if self.verbose:
            logger.info("%s", record)
        else:
            logger.debug("%s", record)
        return record
