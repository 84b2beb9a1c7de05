"""
Inline verification for online database migrations

Fingerprints source and target rows while a migration copies and
replicates them, stops the migration on the first mismatch, and delivers
one verdict before cutover.

Components:
- canonicalize/fingerprint: charset-, collation- and compression-aware row digests
- fetcher: reads the same primary keys from both databases
- detector: turns fingerprints into mismatch sets
- orchestrator: reacts to copy, replication and cutover signals
- reporter/events: status events and fatal error records
- report: run report generation

Usage:
    from src.verification.config import VerifierConfig
    from src.verification.orchestrator import build_verifier
    from src.verification.reporter import StatusReporter
"""

__version__ = "1.0.0"
__all__ = [
    "canonicalize",
    "charsets",
    "config",
    "detector",
    "errors",
    "events",
    "fetcher",
    "fingerprint",
    "models",
    "orchestrator",
    "report",
    "reporter",
    "schema",
]
