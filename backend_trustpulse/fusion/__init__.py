# Fusion coordinator: eligibility, ledger sync and category impact records.

from backend_trustpulse.fusion.coordinator import (
    CategoryImpact,
    FusionConfig,
    FusionCoordinator,
    LedgerSyncResult,
)

__all__ = ["CategoryImpact", "FusionConfig", "FusionCoordinator", "LedgerSyncResult"]
