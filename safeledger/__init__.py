"""
safeledger - Time-locked custody ledger with rebase-aware accounting

Accounts deposit a token into a ledger tier, request a withdrawal, wait out
the tier's unlock delay and withdraw, or cancel before then. Balances stay
proportional when the token's held balance drifts (rebasing, fee-on-transfer,
airdrops).

Usage:
    from datetime import timedelta
    from safeledger import TokenBook, TokenSpec, DeploymentConfig, deploy

    book = TokenBook("main")
    book.register_token(TokenSpec("USDX", "Dollar X"))
    book.register_wallet("alice")
    book.mint("USDX", "alice", 1_000)

    deployment = deploy(book, DeploymentConfig(owner="admin", tiers=(7,)))
    safe = deployment.safe(7)

    book.approve("alice", "USDX", deployment.vault.address, 1_000)
    safe.deposit("alice", "USDX", 1_000)
    safe.request("alice", "USDX")
    book.advance_time(book.current_time + timedelta(days=7))
    safe.withdraw("alice", "USDX")
"""

# Core types
from .core import (
    AccountTokenRecord,
    TokenPool,
    VaultTokenAnchor,
    TokenSpec,
    Move,
    Transfer,
    Event,
    EventType,
    RequestOutcome,
    LedgerError,
    PreconditionFailed,
    ConsistencyError,
    Unauthorized,
    AlreadyInitialized,
    ReentrancyError,
    ArithmeticOverflow,
    InsufficientFunds,
    InsufficientAllowance,
    TokenNotRegistered,
    WalletNotRegistered,
    BASE_UNIT,
    MAX_UINT256,
    SYSTEM_WALLET,
)

# Fixed-point helpers
from .scaling import (
    Rebase,
    mul_div,
    rescale,
    normalize,
    proportional_share,
)

# Execution environment
from .book import TokenBook

# Contracts
from .access import Contract, entrypoint
from .vault import Vault
from .ledger import Ledger

# Tiers and deployment
from .tiers import (
    DurationSafe,
    Safe1Day,
    Safe3Days,
    Safe7Days,
    Safe14Days,
    Safe21Days,
    Safe28Days,
    Safe90Days,
    Safe180Days,
    Safe365Days,
    SAFE_TIERS,
    DEFAULT_TIERS,
    DeploymentConfig,
    Deployment,
    deploy,
)

__all__ = [
    # Core
    'AccountTokenRecord', 'TokenPool', 'VaultTokenAnchor',
    'TokenSpec', 'Move', 'Transfer', 'Event', 'EventType', 'RequestOutcome',
    'LedgerError', 'PreconditionFailed', 'ConsistencyError', 'Unauthorized',
    'AlreadyInitialized', 'ReentrancyError', 'ArithmeticOverflow',
    'InsufficientFunds', 'InsufficientAllowance',
    'TokenNotRegistered', 'WalletNotRegistered',
    'BASE_UNIT', 'MAX_UINT256', 'SYSTEM_WALLET',
    # Scaling
    'Rebase', 'mul_div', 'rescale', 'normalize', 'proportional_share',
    # Book
    'TokenBook',
    # Contracts
    'Contract', 'entrypoint', 'Vault', 'Ledger',
    # Tiers
    'DurationSafe', 'Safe1Day', 'Safe3Days', 'Safe7Days', 'Safe14Days',
    'Safe21Days', 'Safe28Days', 'Safe90Days', 'Safe180Days', 'Safe365Days',
    'SAFE_TIERS', 'DEFAULT_TIERS', 'DeploymentConfig', 'Deployment', 'deploy',
]

__version__ = '1.0.0'
