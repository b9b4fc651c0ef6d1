"""
Test that trustpulse_logging can be imported without circular import and logger works.
"""

from __future__ import annotations


def test_logging_import():
    """Import get_logger from trustpulse_logging and use the logger."""
    from backend_trustpulse.trustpulse_logging import get_logger

    logger = get_logger("test")
    assert logger is not None
    assert hasattr(logger, "info")
    assert hasattr(logger, "debug")
    assert hasattr(logger, "warning")
    assert hasattr(logger, "error")
    # Smoke test: call info (should not raise)
    logger.info("test_message", key="value")


def test_short_id_truncates_submitter_ids():
    """Long ids are cut to 16 chars plus ellipsis; empty ids render as '?'."""
    from backend_trustpulse.trustpulse_logging import short_id

    assert short_id("did:civic:" + "a" * 40) == "did:civic:aaaaaa..."
    assert short_id("short") == "short"
    assert short_id(None) == "?"
    assert short_id("") == "?"


def test_raw_submitter_id_truncated_by_processor():
    """A full submitter_id passed straight to a log call is shortened before rendering."""
    from backend_trustpulse.trustpulse_logging.logger import _truncate_submitter

    event = _truncate_submitter(None, "info", {"event_type": "x", "submitter_id": "did:civic:" + "b" * 40})
    assert event["submitter_id"] == "did:civic:bbbbbb..."
    already = _truncate_submitter(None, "info", {"submitter_id": "did:civic:bbbbbb..."})
    assert already["submitter_id"] == "did:civic:bbbbbb..."
