"""
Run report generation and formatting.

Aggregates the VerificationRuns a verifier retained into a plain dict that
can be printed for an operator or exported as JSON.
"""

import json
from collections import Counter
from datetime import UTC, datetime
from typing import Any

from .models import MismatchKind, RunOutcome, VerificationRun, VerificationScope, format_primary_key

_RECOMMENDATIONS = {
    MismatchKind.MISSING: (
        "Rows are missing on the target. Check that the row copier committed every "
        "batch and that replicated deletes were not applied twice."
    ),
    MismatchKind.EXTRA: (
        "The target holds rows the source does not. Check for writes to the target "
        "outside the migration and for replicated deletes that were never applied."
    ),
    MismatchKind.MODIFIED: (
        "Row contents differ. Look for triggers on the target and for column "
        "charsets that cannot represent the source data."
    ),
    MismatchKind.UNVERIFIABLE: (
        "Some values could not be decoded. Check the compressed-column settings "
        "against the data actually stored."
    ),
}


def _discrepancies(run: VerificationRun) -> list[dict[str, Any]]:
    discrepancies = []
    for table in run.failing_tables():
        mismatch_set = run.mismatches[table]
        kinds = Counter(kind.value for kind in mismatch_set.kinds.values())
        discrepancies.append({
            "table": table,
            "scope": run.scope.value,
            "primary_keys": [format_primary_key(pk) for pk in mismatch_set.primary_keys],
            "kinds": dict(sorted(kinds.items())),
            "timestamp": run.timestamp.isoformat(),
        })
    return discrepancies


def generate_run_report(runs: list[VerificationRun]) -> dict[str, Any]:
    """
    Generate a report from verification runs

    Args:
        runs: Runs in the order they completed; unsealed runs are skipped

    Returns:
        Dictionary containing:
        - status: PASS or FAIL once cutover ran, IN_PROGRESS or FAIL before,
          NO_DATA without runs
        - total_runs: Number of sealed runs
        - runs_by_scope: scope -> outcome -> count
        - tables_examined: Every table any run looked at
        - failing_tables: Tables behind the status
        - discrepancies: One entry per failing table per failing run
        - summary: Human-readable summary
        - recommendations: List of recommended actions
        - timestamp: Report generation timestamp
    """
    sealed = [run for run in runs if run.sealed]
    if not sealed:
        return {
            "status": "NO_DATA",
            "total_runs": 0,
            "runs_by_scope": {},
            "tables_examined": [],
            "failing_tables": [],
            "discrepancies": [],
            "summary": "No verification runs available",
            "recommendations": [],
            "timestamp": datetime.now(UTC).isoformat(),
        }

    runs_by_scope: dict[str, dict[str, int]] = {}
    tables_examined: set[str] = set()
    discrepancies = []
    for run in sealed:
        counts = runs_by_scope.setdefault(run.scope.value, {o.value: 0 for o in (RunOutcome.PASS, RunOutcome.FAIL)})
        counts[run.outcome.value] += 1
        tables_examined |= run.tables_examined
        discrepancies.extend(_discrepancies(run))

    cutover_runs = [run for run in sealed if run.scope is VerificationScope.CUTOVER]
    if cutover_runs:
        verdict = cutover_runs[-1]
        status = "PASS" if verdict.passed else "FAIL"
        failing_tables = verdict.failing_tables()
    else:
        failing_tables = sorted({d["table"] for d in discrepancies})
        status = "FAIL" if failing_tables else "IN_PROGRESS"

    summary = _generate_summary(status, len(sealed), len(tables_examined), failing_tables)
    recommendations = _generate_recommendations(discrepancies, status)

    return {
        "status": status,
        "total_runs": len(sealed),
        "runs_by_scope": runs_by_scope,
        "tables_examined": sorted(tables_examined),
        "failing_tables": failing_tables,
        "discrepancies": discrepancies,
        "summary": summary,
        "recommendations": recommendations,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def _generate_summary(status: str, total_runs: int, total_tables: int, failing: list[str]) -> str:
    if status == "PASS":
        return f"Cutover verification passed. {total_runs} runs examined {total_tables} tables."
    if status == "IN_PROGRESS":
        return (
            f"No mismatches so far. {total_runs} incremental runs examined "
            f"{total_tables} tables; cutover verification has not run yet."
        )
    return (
        f"Verification found mismatches in {len(failing)} of {total_tables} tables: "
        f"{', '.join(failing)}."
    )


def _generate_recommendations(discrepancies: list[dict[str, Any]], status: str) -> list[str]:
    if status == "PASS":
        return ["Source and target agree. Cutover can proceed."]
    if not discrepancies:
        return []

    seen = set()
    for discrepancy in discrepancies:
        seen.update(discrepancy["kinds"])

    recommendations = [
        text for kind, text in _RECOMMENDATIONS.items() if kind.value in seen
    ]
    if status == "FAIL":
        recommendations.append("Do not cut over. Restart the migration once the cause is fixed.")
    return recommendations


def export_report_json(report: dict[str, Any], output_path: str) -> None:
    """
    Export report to JSON file

    Args:
        report: Report dictionary
        output_path: Path to output file
    """
    with open(output_path, "w") as f:
        json.dump(report, f, indent=2)


def format_report_console(report: dict[str, Any]) -> str:
    """
    Format report for console output

    Args:
        report: Report dictionary

    Returns:
        Formatted string for console display
    """
    lines = []

    lines.append("=" * 80)
    lines.append("VERIFICATION REPORT")
    lines.append("=" * 80)
    lines.append(f"Status: {report['status']}")
    lines.append(f"Timestamp: {report['timestamp']}")
    lines.append(f"Total Runs: {report['total_runs']}")
    for scope, counts in sorted(report["runs_by_scope"].items()):
        lines.append(f"  {scope}: {counts.get('PASS', 0)} passed, {counts.get('FAIL', 0)} failed")
    lines.append(f"Tables Examined: {len(report['tables_examined'])}")
    lines.append(f"Failing Tables: {', '.join(report['failing_tables']) or 'none'}")
    lines.append("")

    lines.append("SUMMARY")
    lines.append("-" * 80)
    lines.append(report["summary"])
    lines.append("")

    if report["discrepancies"]:
        lines.append("DISCREPANCIES")
        lines.append("-" * 80)

        for disc in report["discrepancies"]:
            lines.append(f"Table: {disc['table']} ({disc['scope']})")
            lines.append(f"  Primary Keys: {' '.join(disc['primary_keys'])}")
            lines.append(f"  Kinds: {disc['kinds']}")
            lines.append("")

    if report["recommendations"]:
        lines.append("RECOMMENDATIONS")
        lines.append("-" * 80)
        for i, rec in enumerate(report["recommendations"], 1):
            lines.append(f"{i}. {rec}")
        lines.append("")

    lines.append("=" * 80)

    return "\n".join(lines)
