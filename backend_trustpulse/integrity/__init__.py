# Submission integrity: pluggable proof scheme + timestamp drift bound.
# Stateless; no side effects.

from backend_trustpulse.integrity.validator import (
    FingerprintProofScheme,
    IntegrityConfig,
    IntegrityValidator,
    ProofScheme,
)

__all__ = [
    "FingerprintProofScheme",
    "IntegrityConfig",
    "IntegrityValidator",
    "ProofScheme",
]
