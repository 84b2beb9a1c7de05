"""
Exception hierarchy for the inline verifier.

Value- and row-level problems resolve to a recorded mismatch or to one of
these errors; none of them is meant to be logged and ignored.
"""

from typing import Any


class VerificationError(Exception):
    """Base class for every error raised by the verifier."""


class DecompressionError(VerificationError):
    """A compressed column value is not a valid block for its algorithm."""

    def __init__(self, reason: str, column: str | None = None):
        self.reason = reason
        self.column = column
        where = f" in column {column}" if column else ""
        super().__init__(f"failed to decompress value{where}: {reason}")


class FetchError(VerificationError):
    """Reading rows from one side failed after the retry policy gave up."""

    def __init__(self, side: str, table: str, cause: Exception | None = None):
        self.side = side
        self.table = table
        self.cause = cause
        detail = f": {type(cause).__name__}: {cause}" if cause is not None else ""
        super().__init__(f"failed to fetch rows for {table} from {side}{detail}")


class MismatchDetected(VerificationError):
    """
    Source and target rows diverged.

    Carries the user-facing message and the machine-readable
    table -> primary keys mapping.
    """

    def __init__(self, message: str, mismatches: dict[str, list[Any]]):
        self.message = message
        self.mismatches = mismatches
        super().__init__(message)


class OrchestratorMisuse(VerificationError):
    """The caller sequenced verifier signals incorrectly or named an unknown table."""


class VerifierHalted(VerificationError):
    """A signal arrived after the verifier already failed or was aborted."""


class CancellationError(VerificationError):
    """A verification pass was abandoned because the migration was aborted."""
