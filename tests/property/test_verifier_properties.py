"""
Property-based tests for mismatch detection and failure reporting.

Tests properties related to:
- Exactly the corrupted keys being reported
- Batch boundaries not changing the verdict
- Primary key formatting and ordering in messages
"""

import pytest
from hypothesis import given, settings, strategies as st
from prometheus_client import CollectorRegistry

from src.utils.metrics import VerificationMetrics
from src.verification.detector import MismatchDetector
from src.verification.models import (
    ColumnEncoding,
    ColumnSpec,
    MismatchKind,
    MismatchSet,
    Row,
    TableSchema,
    format_primary_key,
    sort_primary_keys,
)
from src.verification.orchestrator import cutover_failure_message, incremental_failure_message

pytestmark = pytest.mark.property

TABLE = "gftest.test_table_1"
SCHEMA = TableSchema(TABLE, ("id",), (
    ColumnSpec("data", ColumnEncoding("utf8mb4", "utf8mb4_bin"), ColumnEncoding("utf8mb4", "utf8mb4_bin")),
))

table_data = st.dictionaries(
    keys=st.integers(min_value=1, max_value=10_000),
    values=st.text(max_size=20),
    min_size=1,
    max_size=50,
)


def to_rows(data, side):
    encodings = SCHEMA.source_encodings if side == "source" else SCHEMA.target_encodings
    return {pk: Row(TABLE, pk, {"data": value}, encodings) for pk, value in data.items()}


def detector():
    return MismatchDetector(metrics=VerificationMetrics(registry=CollectorRegistry()))


# Property: the detector reports exactly the keys whose rows were changed
@given(data=table_data, corrupt=st.sets(st.integers(min_value=0, max_value=49), max_size=10))
@settings(max_examples=50)
def test_reports_exactly_the_corrupted_keys(data, corrupt):
    """Changed rows are MODIFIED; untouched rows never show up."""
    keys = sorted(data)
    corrupted = {keys[i] for i in corrupt if i < len(keys)}
    target = {pk: (value + "!" if pk in corrupted else value) for pk, value in data.items()}

    result = detector().compare(SCHEMA, to_rows(data, "source"), to_rows(target, "target"))

    assert result.kinds == {pk: MismatchKind.MODIFIED for pk in corrupted}


# Property: comparing in batches finds the same mismatches as comparing at once
@given(
    source=table_data,
    target=table_data,
    batch_size=st.integers(min_value=1, max_value=20),
)
@settings(max_examples=50)
def test_batching_does_not_change_the_result(source, target, batch_size):
    """MismatchSet.merge over batches equals one comparison of every key."""
    source_rows, target_rows = to_rows(source, "source"), to_rows(target, "target")
    keys = sort_primary_keys(set(source) | set(target))
    compare = detector().compare

    merged = MismatchSet(TABLE)
    for i in range(0, len(keys), batch_size):
        batch = keys[i:i + batch_size]
        merged = merged.merge(compare(SCHEMA, source_rows, target_rows, requested=batch))

    assert merged == compare(SCHEMA, source_rows, target_rows)


# Property: composite keys render as their parts joined by '/'
@given(parts=st.lists(st.integers() | st.text(alphabet="abcxyz", min_size=1), min_size=2, max_size=4))
def test_composite_key_format(parts):
    formatted = format_primary_key(tuple(parts))

    assert formatted.split("/") == [str(part) for part in parts]


# Property: incremental messages list every key in order, comma separated
@given(pks=st.lists(st.integers(min_value=0), min_size=1, max_size=20, unique=True))
def test_incremental_message_lists_keys(pks):
    message = incremental_failure_message(TABLE, pks)

    inner = message[message.index("[") + 1:message.index("]")]
    assert inner.split(",") == [str(pk) for pk in pks]
    assert message.endswith(f"on {TABLE} do not match")


# Property: cutover messages order tables and keys ascending
@given(mismatches=st.dictionaries(
    keys=st.sampled_from(["gftest.a", "gftest.b", "gftest.c", "shop.orders"]),
    values=st.lists(st.integers(min_value=0), min_size=1, max_size=5, unique=True),
    min_size=1,
))
def test_cutover_message_is_ordered(mismatches):
    message = cutover_failure_message(mismatches)

    expected = "cutover verification failed for: " + "".join(
        f"{table} [pks: {''.join(f'{pk} ' for pk in sorted(pks))}] "
        for table, pks in sorted(mismatches.items())
    )
    assert message == expected
