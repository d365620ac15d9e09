"""
access.py - Contract base: ownership, managers, events and guarded entry points

Every state-mutating contract method is decorated with @entrypoint, which

    1. rejects re-entry while another entry point of the same contract runs,
    2. snapshots the whole TokenBook (balances, allowances, every contract),
    3. restores that snapshot if the method raises, then re-raises.

A call therefore either commits completely or leaves no trace, including no
emitted events.
"""

from __future__ import annotations
from datetime import datetime
from typing import Any, Callable, Dict, List, Set, TypeVar
import copy
import functools
import logging

from .core import Event, EventType, ReentrancyError, Unauthorized

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

# Attributes that are wiring or guard state rather than contract storage.
_TRANSIENT_ATTRIBUTES = frozenset({"book", "_entered"})


def entrypoint(method: F) -> F:
    """Make a contract method non-reentrant and all-or-nothing."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        if self._entered:
            raise ReentrancyError(f"{self.address}: reentrant call to {method.__name__}")
        snapshot = self.book.snapshot()
        self._entered = True
        try:
            return method(self, *args, **kwargs)
        except Exception as exc:
            self.book.restore(snapshot)
            logger.debug("%s.%s reverted: %s", self.address, method.__name__, exc)
            raise
        finally:
            self._entered = False

    return wrapper  # type: ignore[return-value]


class Contract:
    """
    Base class for contracts attached to a TokenBook.

    Attributes:
        book: The TokenBook the contract runs against.
        address: Contract address (registered as a contract wallet).
        owner: Administrative owner; receives swept residue.
        managers: Addresses allowed to call setup besides the owner.
        events: Events emitted so far, oldest first.
    """

    def __init__(self, book, address: str, owner: str):
        if not owner:
            raise ValueError("Contract owner cannot be empty")
        self.book = book
        self.address = address
        self.owner = owner
        self.managers: Set[str] = set()
        self.events: List[Event] = []
        self._entered = False
        book.attach(self)

    @property
    def now(self) -> datetime:
        return self.book.current_time

    # ========================================================================
    # STATE EXPORT (used by TokenBook snapshots)
    # ========================================================================

    def export_state(self) -> Dict[str, Any]:
        return {
            key: copy.deepcopy(value)
            for key, value in vars(self).items()
            if key not in _TRANSIENT_ATTRIBUTES
        }

    def import_state(self, state: Dict[str, Any]) -> None:
        for key, value in state.items():
            setattr(self, key, copy.deepcopy(value))

    # ========================================================================
    # ROLES
    # ========================================================================

    def is_manager(self, address: str) -> bool:
        return address in self.managers

    def _require_owner(self, caller: str) -> None:
        if caller != self.owner:
            raise Unauthorized(f"{caller} is not the owner of {self.address}")

    def _require_manager(self, caller: str) -> None:
        if caller != self.owner and caller not in self.managers:
            raise Unauthorized(f"{caller} is not a manager of {self.address}")

    @entrypoint
    def set_manager(self, caller: str, address: str, flag: bool) -> None:
        """Grant or revoke the manager role. Owner only."""
        self._require_owner(caller)
        if flag:
            self.managers.add(address)
        else:
            self.managers.discard(address)
        self.emit(EventType.MANAGER, address=address, flag=flag)

    # ========================================================================
    # EVENTS
    # ========================================================================

    def emit(self, event_type: EventType, **data: Any) -> Event:
        event = Event(event_type=event_type, emitter=self.address, timestamp=self.now, data=data)
        self.events.append(event)
        logger.debug("%r", event)
        return event

    def events_of(self, event_type: EventType) -> List[Event]:
        """Events of one type, oldest first."""
        return [e for e in self.events if e.event_type == event_type]
