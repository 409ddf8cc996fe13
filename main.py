#!/usr/bin/env python3
"""
Bike Rental Model Comparison - Main Pipeline
=============================================

Compares candidate linear and logistic regression models with k-fold
cross-validation and a held-out test set.

Phases:
    1. EDA - Text summary of the response and predictor correlations
    2. Preparation - Categorical levels, derived binary response, train/test split
    3. Evaluation - One engine run per configured task (regression, classification)
    4. Reporting - Result tables, best candidate per task, CSV/JSON export

Usage:
    # Run complete pipeline
    python main.py --data data/raw/day.csv

    # Run specific phase
    python main.py --data data/raw/day.csv --phase eda

    # Run with custom config
    python main.py --data data/raw/day.csv --config config/custom.yaml
"""

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

import pandas as pd

from cvselect.data_loader import load_config, load_data, validate_data, print_data_summary
from cvselect.eda import generate_eda_report, print_eda_report
from cvselect.evaluation import RankedResultTable, evaluate
from cvselect.preprocessing import prepare_pipeline, print_preparation_summary
from cvselect.reporting import export_results, print_results_table, select_best


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the pipeline."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(f'pipeline_{datetime.now().strftime("%Y%m%d_%H%M%S")}.log')
        ]
    )


def required_columns(config: Dict[str, Any]) -> List[str]:
    """Raw columns the configuration depends on."""
    prep_config = config.get('preparation', {})
    columns = list(prep_config.get('categorical_levels', {}).keys())
    binarize = prep_config.get('binarize')
    if binarize:
        columns.append(binarize['column'])
    derived = binarize.get('new_column') if binarize else None
    for task in config.get('tasks', []):
        if task['response'] != derived and task['response'] not in columns:
            columns.append(task['response'])
    return columns


def run_eda(df: pd.DataFrame, config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Execute Phase 1: Exploratory Data Analysis.

    Args:
        df: Prepared data (derived columns included)
        config: Configuration dictionary

    Returns:
        EDA report dictionary
    """
    print("\n" + "=" * 70)
    print("PHASE 1: EXPLORATORY DATA ANALYSIS")
    print("=" * 70)

    tasks = config.get('tasks', [])
    continuous = [t['response'] for t in tasks if t.get('family') == 'continuous']
    binary = [t['response'] for t in tasks if t.get('family') == 'binary']
    if not continuous:
        raise ValueError("EDA needs at least one continuous task in the configuration")

    report = generate_eda_report(
        df,
        response=continuous[0],
        class_column=binary[0] if binary else None
    )
    print_eda_report(report)

    return report


def run_preparation(df: pd.DataFrame, config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Execute Phase 2: Dataset Preparation.

    Args:
        df: Raw data
        config: Configuration dictionary

    Returns:
        Preparation result dictionary
    """
    print("\n" + "=" * 70)
    print("PHASE 2: DATA PREPARATION")
    print("=" * 70)

    prep_config = config.get('preparation', {})
    binarize = prep_config.get('binarize')
    if binarize and 'labels' in binarize:
        binarize = dict(binarize, labels=tuple(binarize['labels']))

    result = prepare_pipeline(
        df,
        categorical_levels=prep_config.get('categorical_levels'),
        binarize=binarize,
        drop_columns=prep_config.get('drop_columns'),
        test_size=prep_config.get('test_size', 0.2),
        seed=prep_config.get('seed', 42),
        stratify=prep_config.get('stratify')
    )

    print_preparation_summary(result)

    return result


def run_task(
    task: Dict[str, Any],
    prep_result: Dict[str, Any],
    config: Dict[str, Any]
) -> RankedResultTable:
    """
    Execute Phase 3 for one task: a single evaluation engine run.

    Args:
        task: Task configuration (response, family, metric, specifications)
        prep_result: Preparation result dictionary
        config: Configuration dictionary

    Returns:
        Result table in specification order
    """
    eval_config = config.get('evaluation', {})
    exclude = task.get('exclude_columns', [])

    train_set = prep_result['train_set'].drop(columns=exclude)
    test_set = prep_result['test_set'].drop(columns=exclude)

    return evaluate(
        task['response'],
        task['specifications'],
        train_set,
        test_set,
        family=task['family'],
        metric=task['metric'],
        fold_count=eval_config.get('fold_count', 5),
        seed=eval_config.get('seed', 42),
        on_error=eval_config.get('on_error', 'raise'),
        n_jobs=eval_config.get('n_jobs'),
        scale=eval_config.get('scale', True),
        max_iter=eval_config.get('max_iter', 1000)
    )


def run_evaluation(prep_result: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Execute Phases 3 and 4: evaluate every task and report it.

    Args:
        prep_result: Preparation result dictionary
        config: Configuration dictionary

    Returns:
        Dictionary of task name -> {'table', 'best', paths}
    """
    print("\n" + "=" * 70)
    print("PHASE 3: MODEL EVALUATION")
    print("=" * 70)

    output_dir = config.get('output', {}).get('results_path', 'reports/results/')
    results = {}

    for task in config.get('tasks', []):
        table = run_task(task, prep_result, config)
        print_results_table(table, task['name'])
        paths = export_results(table, output_dir, task['name'])
        results[task['name']] = {'table': table, 'best': select_best(table), **paths}

    return results


def run_full_pipeline(
    data_path: str,
    config_path: str = "config/config.yaml"
) -> Dict[str, Any]:
    """
    Execute the complete pipeline.

    Args:
        data_path: Path to input CSV file
        config_path: Path to configuration file

    Returns:
        Dictionary containing all phase results
    """
    print("\n" + "=" * 70)
    print("MODEL COMPARISON PIPELINE")
    print(f"Started at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 70)

    config = load_config(config_path)
    setup_logging(config.get('logging', {}).get('level', 'INFO'))

    df = load_data(data_path)
    print_data_summary(df)
    validate_data(df, required_columns=required_columns(config), strict=True)

    results = {'config': config, 'data_shape': df.shape}

    results['preparation'] = run_preparation(df, config)
    results['eda'] = run_eda(results['preparation']['data'], config)
    results['evaluation'] = run_evaluation(results['preparation'], config)

    print("\n" + "=" * 70)
    print("PIPELINE COMPLETE")
    print("=" * 70)
    print(f"  • Input data: {df.shape[0]} rows × {df.shape[1]} columns")
    for name, task_result in results['evaluation'].items():
        best = task_result['best']
        summary = f"{best.specification} ({best.metric}={best.score:.2f})" if best else "none"
        print(f"  • {name}: best {summary}")
    print(f"Completed at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 70 + "\n")

    return results


def run_single_phase(
    phase: str,
    data_path: str,
    config_path: str = "config/config.yaml"
) -> Dict[str, Any]:
    """
    Execute a single phase of the pipeline.

    Args:
        phase: Phase to run ('eda', 'prepare', 'evaluate')
        data_path: Path to input CSV file
        config_path: Path to configuration file

    Returns:
        Phase result dictionary
    """
    config = load_config(config_path)
    setup_logging(config.get('logging', {}).get('level', 'INFO'))

    df = load_data(data_path)
    validate_data(df, required_columns=required_columns(config), strict=True)

    if phase == 'eda':
        prep_result = run_preparation(df, config)
        return run_eda(prep_result['data'], config)

    elif phase == 'prepare':
        return run_preparation(df, config)

    elif phase == 'evaluate':
        prep_result = run_preparation(df, config)
        return run_evaluation(prep_result, config)

    else:
        raise ValueError(f"Unknown phase: {phase}. Choose from: eda, prepare, evaluate")


def main():
    """Main entry point with argument parsing."""
    parser = argparse.ArgumentParser(
        description="Cross-validated comparison of candidate regression models",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --data data/raw/day.csv
  python main.py --data data/raw/day.csv --phase eda
  python main.py --data data/raw/day.csv --config config/custom.yaml
        """
    )

    parser.add_argument(
        '--data', '-d',
        type=str,
        required=True,
        help='Path to the input CSV file'
    )

    parser.add_argument(
        '--config', '-c',
        type=str,
        default='config/config.yaml',
        help='Path to configuration file (default: config/config.yaml)'
    )

    parser.add_argument(
        '--phase', '-p',
        type=str,
        choices=['eda', 'prepare', 'evaluate', 'all'],
        default='all',
        help='Phase to run (default: all)'
    )

    args = parser.parse_args()

    if not Path(args.data).exists():
        print(f"Error: Data file not found: {args.data}")
        sys.exit(1)

    if not Path(args.config).exists():
        print(f"Error: Config file not found: {args.config}")
        sys.exit(1)

    try:
        if args.phase == 'all':
            run_full_pipeline(args.data, args.config)
        else:
            run_single_phase(args.phase, args.data, args.config)

        return 0

    except Exception as e:
        logging.error(f"Pipeline failed: {e}", exc_info=True)
        print(f"\n❌ Pipeline failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
