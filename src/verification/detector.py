"""
Mismatch detection.

Compares fingerprints of the rows fetched from both sides for one batch of
primary keys and reports the keys that diverge.
"""

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from src.utils.metrics import VerificationMetrics

from .errors import DecompressionError
from .fingerprint import RowFingerprinter
from .models import MismatchKind, MismatchSet, Row, TableSchema, format_primary_key

logger = logging.getLogger(__name__)


class MismatchDetector:
    """Diffs source and target rows of one table."""

    def __init__(
        self,
        fingerprinter: RowFingerprinter | None = None,
        metrics: VerificationMetrics | None = None,
    ):
        self.fingerprinter = fingerprinter or RowFingerprinter()
        self.metrics = metrics or VerificationMetrics()

    def compare(
        self,
        schema: TableSchema,
        source_rows: Mapping[Any, Row],
        target_rows: Mapping[Any, Row],
        requested: Iterable[Any] | None = None,
    ) -> MismatchSet:
        """
        Compare one batch.

        Args:
            schema: Table being verified
            source_rows: Rows read from the source, keyed by primary key
            target_rows: Rows read from the target, keyed by primary key
            requested: Keys the batch asked for; other keys are ignored

        Returns:
            MismatchSet with every diverging key and why it diverged
        """
        if requested is None:
            keys = set(source_rows) | set(target_rows)
        else:
            keys = {pk for pk in requested if pk in source_rows or pk in target_rows}

        column_order = schema.column_names
        comparison = schema.target_encodings
        kinds: dict[Any, MismatchKind] = {}

        with self.metrics.compare_seconds.time():
            for pk in keys:
                source = source_rows.get(pk)
                target = target_rows.get(pk)

                if target is None:
                    kinds[pk] = MismatchKind.MISSING
                    continue
                if source is None:
                    kinds[pk] = MismatchKind.EXTRA
                    continue

                try:
                    source_fp = self.fingerprinter.fingerprint(source, column_order, comparison)
                    target_fp = self.fingerprinter.fingerprint(target, column_order, comparison)
                except DecompressionError as e:
                    logger.warning(
                        f"Cannot verify {schema.name} pk {format_primary_key(pk)}: {e}",
                        extra={"table": schema.name, "pk": format_primary_key(pk), "column": e.column},
                    )
                    kinds[pk] = MismatchKind.UNVERIFIABLE
                    continue

                if source_fp.digest != target_fp.digest:
                    kinds[pk] = MismatchKind.MODIFIED

        self.metrics.record_rows_compared(schema.name, len(keys))
        for kind in kinds.values():
            self.metrics.record_mismatch(schema.name, kind.value)

        if kinds:
            logger.info(
                f"{len(kinds)} of {len(keys)} rows of {schema.name} do not match",
                extra={"table": schema.name, "mismatched": len(kinds)},
            )

        return MismatchSet(schema.name, kinds)
