"""
Exploratory Data Analysis (EDA) Module
======================================

Text-only exploration of the response and its relationship to predictors.

Functions:
    - summarize_response: Distribution statistics of a numeric response
    - correlation_with_response: Pearson correlation and p-value per predictor
    - class_balance: Level counts and shares of a categorical column
    - generate_eda_report: All of the above in one dictionary
"""

import logging
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
from scipy import stats

from .preprocessing import is_categorical

logger = logging.getLogger(__name__)


def summarize_response(df: pd.DataFrame, response: str) -> Dict[str, float]:
    """
    Distribution statistics of a numeric response column.

    Args:
        df: Dataset
        response: Numeric response column

    Returns:
        Dictionary of count, mean, std, quartiles, skew and kurtosis
    """
    values = df[response].dropna().astype(float)
    return {
        "count": int(values.count()),
        "mean": float(values.mean()),
        "std": float(values.std()),
        "min": float(values.min()),
        "25%": float(values.quantile(0.25)),
        "50%": float(values.quantile(0.50)),
        "75%": float(values.quantile(0.75)),
        "max": float(values.max()),
        "skew": float(stats.skew(values)),
        "kurtosis": float(stats.kurtosis(values))
    }


def correlation_with_response(
    df: pd.DataFrame,
    response: str,
    columns: Optional[List[str]] = None
) -> pd.DataFrame:
    """
    Pearson correlation of each numeric predictor with the response.

    Args:
        df: Dataset
        response: Numeric response column
        columns: Predictors to test (default: all other numeric columns)

    Returns:
        DataFrame with columns ['column', 'r', 'p_value'], sorted by |r|
        descending
    """
    if columns is None:
        columns = [
            c for c in df.columns
            if c != response and not is_categorical(df[c])
        ]

    rows = []
    for col in columns:
        pair = df[[col, response]].dropna()
        if len(pair) < 3 or pair[col].nunique() < 2:
            logger.debug(f"Skipping correlation for constant or short column '{col}'")
            continue
        r, p_value = stats.pearsonr(pair[col].astype(float), pair[response].astype(float))
        rows.append({"column": col, "r": float(r), "p_value": float(p_value)})

    result = pd.DataFrame(rows, columns=["column", "r", "p_value"])
    if result.empty:
        return result
    order = result["r"].abs().sort_values(ascending=False).index
    return result.loc[order].reset_index(drop=True)


def class_balance(df: pd.DataFrame, column: str) -> pd.DataFrame:
    """
    Level counts and shares of a categorical column.

    Declared but unused category levels are listed with a zero count.
    """
    counts = df[column].value_counts(sort=False)
    return pd.DataFrame({
        "count": counts.astype(int),
        "share": counts / counts.sum() if counts.sum() else counts.astype(float)
    })


def generate_eda_report(
    df: pd.DataFrame,
    response: str,
    class_column: Optional[str] = None
) -> Dict[str, Any]:
    """
    Run the exploratory summary.

    Args:
        df: Dataset
        response: Numeric response column
        class_column: Binary/categorical response column (optional)

    Returns:
        Dictionary containing response statistics, correlations and class balance
    """
    logger.info("=" * 60)
    logger.info("STARTING EXPLORATORY DATA ANALYSIS")
    logger.info("=" * 60)

    correlations = correlation_with_response(df, response)
    report = {
        "n_rows": int(len(df)),
        "response": response,
        "response_summary": summarize_response(df, response),
        "correlations": correlations.to_dict(orient="records"),
        "categorical_columns": [c for c in df.columns if is_categorical(df[c])]
    }

    if class_column is not None:
        balance = class_balance(df, class_column)
        report["class_column"] = class_column
        report["class_balance"] = {
            str(level): {"count": int(row["count"]), "share": float(row["share"])}
            for level, row in balance.iterrows()
        }

    significant = [c["column"] for c in report["correlations"] if c["p_value"] < 0.05]
    logger.info(f"Predictors significantly correlated with '{response}': {significant}")
    logger.info("=" * 60)

    return report


def print_eda_report(report: Dict[str, Any], threshold: float = 0.5) -> None:
    """
    Print the exploratory summary to console.

    Args:
        report: Dictionary from generate_eda_report
        threshold: |r| above which a correlation is flagged as strong
    """
    summary = report["response_summary"]

    print("\n" + "=" * 60)
    print(f"EXPLORATORY SUMMARY - {report['response']}")
    print("=" * 60)
    print(f"Rows: {report['n_rows']}")
    print(f"Mean: {summary['mean']:.2f} | Std: {summary['std']:.2f} | "
          f"Median: {summary['50%']:.2f} | Skew: {summary['skew']:.3f}")

    print("\nCorrelation with response:")
    print("-" * 60)
    print(f"{'Column':<20} {'r':>10} {'p-value':>12}")
    for row in report["correlations"]:
        flag = " *" if abs(row["r"]) >= threshold else ""
        print(f"{row['column']:<20} {row['r']:>10.4f} {row['p_value']:>12.2e}{flag}")

    if "class_balance" in report:
        print(f"\nClass balance of '{report['class_column']}':")
        print("-" * 60)
        for level, row in report["class_balance"].items():
            print(f"  {level:<18} {row['count']:>8} ({np.round(row['share'] * 100, 1)}%)")

    print("=" * 60 + "\n")
