"""
Reporting Module
================

Consumes result tables from the evaluation engine.

Features:
    - Best candidate selection respecting the metric's direction
    - CSV and JSON export
    - Console report
"""

import json
import logging
import math
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .evaluation import RankedResultTable, ScoreRecord

logger = logging.getLogger(__name__)


def select_best(table: RankedResultTable) -> Optional[ScoreRecord]:
    """
    Pick the best scoring record.

    Lowest score wins for RMSE, highest for accuracy. Failed records are
    ignored and ties go to the earliest specification.

    Returns:
        Best record, or None if every specification failed
    """
    best = None
    for record in table:
        if record.failed or math.isnan(record.score):
            continue
        if best is None or table.metric.is_better(record.score, best.score):
            best = record
    return best


def generate_results_report(table: RankedResultTable, task: str) -> Dict[str, Any]:
    best = select_best(table)
    return {
        'task': task,
        'generated_at': datetime.now().isoformat(),
        'metric': table.metric.value,
        'greater_is_better': table.metric.greater_is_better,
        'best_specification': best.specification if best else None,
        'best_score': best.score if best else None,
        'results': table.to_records()
    }


def export_results(
    table: RankedResultTable,
    output_dir: str,
    task: str
) -> Dict[str, str]:
    """
    Export a result table to CSV and a JSON report.

    Args:
        table: Engine output
        output_dir: Directory for output files
        task: Name used in the file names

    Returns:
        Paths of the written files
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    csv_path = output_dir / f"{task}_results.csv"
    table.to_frame().to_csv(csv_path, index=False)

    report_path = output_dir / f"{task}_report.json"
    report = generate_results_report(table, task)
    with open(report_path, 'w') as f:
        # NaN is not valid JSON; failed scores are written as null
        json.dump(_without_nan(report), f, indent=2)

    logger.info(f"Results exported to {csv_path} and {report_path}")
    return {'csv_path': str(csv_path), 'report_path': str(report_path)}


def _without_nan(value):
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, dict):
        return {k: _without_nan(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_without_nan(v) for v in value]
    return value


def print_results_table(table: RankedResultTable, title: str) -> None:
    """
    Print a result table and the best specification to console.

    Args:
        table: Engine output
        title: Heading for the table
    """
    metric = table.metric
    direction = "higher" if metric.greater_is_better else "lower"
    best = select_best(table)

    print("\n" + "=" * 70)
    print(f"MODEL COMPARISON - {title}")
    print("=" * 70)
    print(f"{'Specification':<44} {'CV ' + metric.value:>11} {'Test ' + metric.value:>13}")
    print("-" * 70)

    for record in table:
        marker = " <" if best is not None and record is best else ""
        if record.failed:
            print(f"{record.specification:<44} {'failed':>11} {'failed':>13}")
        else:
            print(f"{record.specification:<44} {record.cv_score:>11.2f} {record.score:>13.2f}{marker}")

    print("-" * 70)
    if best is not None:
        print(f"Best ({direction} {metric.value} is better): {best.specification} = {best.score:.2f}")
    else:
        print("No specification could be scored.")

    for record in table:
        if record.failed:
            print(f"  ✗ {record.specification}: {record.error}")

    print("=" * 70 + "\n")
