"""
Submission gateway: integrity check, per-submitter fixed-window rate limit,
then the delta store. Returns Accepted or Rejected; rejections never raise.
"""

from backend_trustpulse.gateway.gateway import Accepted, Rejected, SubmissionGateway
from backend_trustpulse.gateway.rate_limiter import RateLimitConfig, RateLimiter

__all__ = [
    "Accepted",
    "RateLimitConfig",
    "RateLimiter",
    "Rejected",
    "SubmissionGateway",
]
