"""
Structured logging for Backend TrustPulse.

JSON logs with timestamp, event_type, target_id / submitter_id where relevant.
Use get_logger() in all pipeline modules for aggregation-friendly output.
"""

from backend_trustpulse.trustpulse_logging.logger import bind_submitter, get_logger, short_id

__all__ = ["bind_submitter", "get_logger", "short_id"]
