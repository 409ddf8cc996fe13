"""
Data Loader Module
==================

Handles configuration loading, CSV ingestion and basic data quality checks.

Functions:
    - load_config: Load YAML configuration file
    - load_data: Load CSV data
    - validate_data: Check required columns and data quality
    - get_data_summary: Generate basic statistics
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import yaml

logger = logging.getLogger(__name__)


def load_config(config_path: str = "config/config.yaml") -> Dict[str, Any]:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to the configuration file

    Returns:
        Dictionary containing configuration parameters

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is malformed
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}

    logger.info(f"Loaded configuration from {config_path}")
    return config


def load_data(
    file_path: str,
    expected_columns: Optional[int] = None,
    index_col: Optional[int] = None
) -> pd.DataFrame:
    """
    Load CSV data.

    Args:
        file_path: Path to the CSV file
        expected_columns: Expected number of columns (optional validation)
        index_col: Column to use as index (optional)

    Returns:
        DataFrame containing the loaded data

    Raises:
        FileNotFoundError: If data file doesn't exist
        ValueError: If the column count doesn't match
    """
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(f"Data file not found: {file_path}")

    df = pd.read_csv(file_path, index_col=index_col)
    logger.info(f"Loaded data from {file_path}: {df.shape[0]} rows × {df.shape[1]} columns")

    if expected_columns is not None and df.shape[1] != expected_columns:
        raise ValueError(
            f"Expected {expected_columns} columns, but found {df.shape[1]}. "
            f"Columns: {list(df.columns)}"
        )

    return df


def validate_data(
    df: pd.DataFrame,
    required_columns: Optional[Sequence[str]] = None,
    strict: bool = True
) -> Tuple[bool, Dict[str, Any]]:
    """
    Validate that the data can feed the evaluation engine.

    Checks:
        - Required columns are present
        - No missing values in the columns used
        - No duplicate rows

    Args:
        df: DataFrame to validate
        required_columns: Columns the configured tasks reference
        strict: If True, raise errors on validation failure

    Returns:
        Tuple of (is_valid, validation_report)
    """
    required_columns = list(required_columns or [])
    report = {
        "total_rows": len(df),
        "total_columns": len(df.columns),
        "column_names": list(df.columns),
        "issues": []
    }

    # Check 1: Required columns
    missing_columns = [c for c in required_columns if c not in df.columns]
    if missing_columns:
        issue = f"Missing required columns: {missing_columns}"
        report["issues"].append(issue)
        report["missing_columns"] = missing_columns
        logger.warning(issue)

    # Check 2: Missing values
    checked = [c for c in required_columns if c in df.columns] or list(df.columns)
    missing_counts = df[checked].isnull().sum()
    total_missing = int(missing_counts.sum())
    if total_missing > 0:
        issue = f"Missing values: {total_missing} in columns {missing_counts[missing_counts > 0].index.tolist()}"
        report["issues"].append(issue)
        report["missing_by_column"] = missing_counts[missing_counts > 0].to_dict()
        logger.warning(issue)

    # Check 3: Duplicate rows
    duplicates = int(df.duplicated().sum())
    if duplicates > 0:
        issue = f"Duplicate rows found: {duplicates}"
        report["issues"].append(issue)
        logger.warning(issue)

    is_valid = len(report["issues"]) == 0
    report["is_valid"] = is_valid

    if strict and not is_valid:
        raise ValueError(f"Data validation failed: {report['issues']}")

    return is_valid, report


def get_data_summary(df: pd.DataFrame) -> Dict[str, Any]:
    """
    Generate summary statistics for the dataset.

    Args:
        df: DataFrame to summarize

    Returns:
        Dictionary containing summary statistics
    """
    summary = {
        "shape": df.shape,
        "columns": list(df.columns),
        "dtypes": df.dtypes.astype(str).to_dict(),
        "memory_usage_mb": df.memory_usage(deep=True).sum() / 1024 / 1024,
        "statistics": {}
    }

    for col in df.select_dtypes(include=[np.number]).columns:
        summary["statistics"][col] = {
            "count": int(df[col].count()),
            "mean": float(df[col].mean()),
            "std": float(df[col].std()),
            "min": float(df[col].min()),
            "50%": float(df[col].quantile(0.50)),
            "max": float(df[col].max())
        }

    return summary


def print_data_summary(df: pd.DataFrame) -> None:
    """
    Print a formatted summary of the dataset to console.

    Args:
        df: DataFrame to summarize
    """
    print("\n" + "=" * 60)
    print("DATASET SUMMARY")
    print("=" * 60)
    print(f"Shape: {df.shape[0]} rows × {df.shape[1]} columns")
    print("\nColumn Information:")
    print("-" * 40)

    for col in df.columns:
        dtype = df[col].dtype
        non_null = df[col].count()
        null_pct = (1 - non_null / len(df)) * 100 if len(df) else 0.0
        print(f"  {col}: {dtype} | {non_null} non-null ({null_pct:.1f}% missing)")

    print("=" * 60 + "\n")
