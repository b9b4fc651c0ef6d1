# Delta store: per-target weighted sums + sanitized feedback log.

from backend_trustpulse.delta_store.store import DeltaConfig, DeltaStore, sanitize_text

__all__ = ["DeltaConfig", "DeltaStore", "sanitize_text"]
