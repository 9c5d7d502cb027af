"""Points ledger exports."""

from .ledger import LedgerResult, PointsLedger, signed_activity_sum  # noqa: F401
from .strategies import (  # noqa: F401
    AtomicLedgerStrategy,
    EmergencyLedgerStrategy,
    LedgerOperation,
    LedgerStrategy,
    PrimaryLedgerStrategy,
    StrategyOutcome,
    build_strategy_chain,
)
