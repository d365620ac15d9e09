"""
tiers.py - Fixed-duration ledger tiers and deployment wiring

Each tier is a Ledger whose unlock delay is fixed by its class. A deployment
is one Vault plus any subset of tiers, all sharing the same fee-token
requirement:

    book = TokenBook("main")
    deployment = deploy(book, DeploymentConfig(owner="admin", tiers=(7, 90)))
    deployment.safe(7).deposit("alice", "USDX", 1_000)
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional, Tuple, Type
import logging

from .ledger import Ledger
from .vault import Vault

logger = logging.getLogger(__name__)

DEFAULT_TIERS: Tuple[int, ...] = (1, 3, 7, 14, 21, 28, 90, 180, 365)


class DurationSafe(Ledger):
    """Ledger with an unlock delay fixed by the subclass's ``unlock_days``."""

    unlock_days: int = 0

    def __init__(
        self,
        book,
        address: str,
        owner: str,
        fee_token: Optional[str] = None,
        required_fee_amount: int = 0,
    ):
        if self.unlock_days <= 0:
            raise TypeError(f"{type(self).__name__} does not define unlock_days")
        super().__init__(
            book,
            address,
            owner,
            unlock_delay=timedelta(days=self.unlock_days),
            fee_token=fee_token,
            required_fee_amount=required_fee_amount,
        )


class Safe1Day(DurationSafe):
    unlock_days = 1


class Safe3Days(DurationSafe):
    unlock_days = 3


class Safe7Days(DurationSafe):
    unlock_days = 7


class Safe14Days(DurationSafe):
    unlock_days = 14


class Safe21Days(DurationSafe):
    unlock_days = 21


class Safe28Days(DurationSafe):
    unlock_days = 28


class Safe90Days(DurationSafe):
    unlock_days = 90


class Safe180Days(DurationSafe):
    unlock_days = 180


class Safe365Days(DurationSafe):
    unlock_days = 365


SAFE_TIERS: Dict[int, Type[DurationSafe]] = {
    cls.unlock_days: cls
    for cls in (
        Safe1Day, Safe3Days, Safe7Days, Safe14Days, Safe21Days,
        Safe28Days, Safe90Days, Safe180Days, Safe365Days,
    )
}


@dataclass(frozen=True)
class DeploymentConfig:
    """
    Parameters of one deployment.

    Attributes:
        owner: Owner of the vault and every tier.
        fee_token: Token depositors must hold, or None for no requirement.
        required_fee_amount: Fee-token balance required to deposit other tokens.
        free_deposits: Deposits allowed to skip the requirement.
        tiers: Unlock delays, in days, to deploy.
        vault_address: Address of the vault.
    """
    owner: str
    fee_token: Optional[str] = None
    required_fee_amount: int = 0
    free_deposits: int = 0
    tiers: Tuple[int, ...] = DEFAULT_TIERS
    vault_address: str = "vault"

    def __post_init__(self):
        unknown = [days for days in self.tiers if days not in SAFE_TIERS]
        if unknown:
            raise ValueError(f"Unknown tiers: {unknown}; available: {sorted(SAFE_TIERS)}")
        if len(set(self.tiers)) != len(self.tiers):
            raise ValueError("Duplicate tiers")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> DeploymentConfig:
        """Build a config from a plain mapping (parsed JSON, env, fixtures)."""
        known = {f for f in cls.__dataclass_fields__}
        extra = set(data) - known
        if extra:
            raise ValueError(f"Unknown config keys: {sorted(extra)}")
        values = dict(data)
        if "tiers" in values:
            values["tiers"] = tuple(int(days) for days in values["tiers"])
        for key in ("required_fee_amount", "free_deposits"):
            if key in values:
                values[key] = int(values[key])
        return cls(**values)

    @staticmethod
    def safe_address(days: int) -> str:
        return f"safe_{days}d"


@dataclass
class Deployment:
    """A vault and the tiers allow-listed on it."""
    vault: Vault
    safes: Dict[int, DurationSafe] = field(default_factory=dict)

    def safe(self, days: int) -> DurationSafe:
        if days not in self.safes:
            raise KeyError(f"No {days}-day tier in this deployment")
        return self.safes[days]

    def ledgers(self) -> Tuple[DurationSafe, ...]:
        return tuple(self.safes[days] for days in sorted(self.safes))


def deploy(book, config: DeploymentConfig) -> Deployment:
    """
    Create the vault and the configured tiers, then wire them together.

    The owner wallet is registered with the book if it is not already.
    """
    if not book.is_registered(config.owner):
        book.register_wallet(config.owner)

    vault = Vault(book, config.vault_address, config.owner, free_deposits=config.free_deposits)
    deployment = Deployment(vault=vault)
    for days in config.tiers:
        deployment.safes[days] = SAFE_TIERS[days](
            book,
            config.safe_address(days),
            config.owner,
            fee_token=config.fee_token,
            required_fee_amount=config.required_fee_amount,
        )

    vault.initialize(config.owner, [safe.address for safe in deployment.safes.values()])
    for safe in deployment.safes.values():
        safe.initialize(config.owner, vault.address)
    logger.info(
        "deployed vault %s with tiers %s", vault.address, sorted(deployment.safes)
    )
    return deployment
