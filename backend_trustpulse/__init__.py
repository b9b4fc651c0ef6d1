"""
Backend TrustPulse: civic trust sentiment aggregation and volatility alerting.

Ingests anonymous support/dissent submissions about civic targets, folds them
into tier-weighted trust deltas, recomputes sentiment on a fixed period, and
emits volatility alerts, reward-trigger signals and fusion/ledger summaries.
Modular architecture with clear separation between gateway, delta store,
aggregation engine, alert monitor, reward agent, fusion coordinator and API.
"""

__version__ = "0.1.0"
