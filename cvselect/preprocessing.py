"""
Data Preprocessing Module
=========================

Turns a DataFrame into a model design matrix and prepares datasets for
evaluation.

Classes:
    - DesignPreprocessor: Builds the design matrix for one specification and
      scales it with statistics learned from the fitting data only

Functions:
    - set_categorical_levels: Fix the level ordering of categorical columns
    - binarize_column: Derive a two-level response from a numeric column
    - split_train_test: Random (optionally stratified) train/test split
    - prepare_pipeline: All of the above driven by configuration
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import joblib
import numpy as np
import pandas as pd
from patsy import DesignInfo, PatsyError, build_design_matrices, design_matrix_builders
from sklearn.model_selection import train_test_split
from sklearn.preprocessing import StandardScaler

from .exceptions import ConfigurationError
from .formula import Specification

logger = logging.getLogger(__name__)

_PATSY_INTERCEPT = "Intercept"


def is_categorical(series: pd.Series) -> bool:
    """True for category, object, string and other non-numeric columns."""
    return isinstance(series.dtype, pd.CategoricalDtype) or not pd.api.types.is_numeric_dtype(series)


def column_levels(series: pd.Series) -> List[Any]:
    """
    Level ordering of a categorical column.

    Uses the declared categories when the column has category dtype,
    otherwise the sorted distinct non-null values.
    """
    if isinstance(series.dtype, pd.CategoricalDtype):
        return list(series.cat.categories)
    return sorted(series.dropna().unique().tolist())


class DesignPreprocessor:
    """
    Design matrix builder for a single specification.

    The design is built by patsy from the specification's terms: numeric
    columns enter as-is, categorical columns are treatment coded (first
    level is the reference) and interactions are products of their
    components' columns. The patsy ``DesignInfo`` is fixed at ``fit`` time,
    so every later call produces the same columns. When ``scale`` is set,
    every design column is scaled to unit variance using statistics from
    the data passed to ``fit``; columns are also centered unless the
    specification drops the intercept.
    """

    def __init__(
        self,
        specification: Specification,
        scale: bool = True,
        levels: Optional[Dict[str, Sequence[Any]]] = None
    ):
        """
        Initialize the preprocessor.

        Args:
            specification: Model specification to build the design for
            scale: Whether to center and scale the design columns
            levels: Fixed level ordering for categorical columns; columns
                not listed take their levels from the fitting data
        """
        self.specification = specification
        self.scale = scale
        self.levels = dict(levels or {})

        self.resolved_: Optional[Specification] = None
        self.levels_: Dict[str, List[Any]] = {}
        self.design_info_: Optional[DesignInfo] = None
        self.feature_names_: Optional[List[str]] = None
        self.scaler: Optional[StandardScaler] = None
        self._is_fitted = False

    def fit(self, df: pd.DataFrame) -> 'DesignPreprocessor':
        """
        Learn categorical levels, design columns and scaling statistics.

        Args:
            df: Fitting data

        Returns:
            Self for method chaining
        """
        self.specification.validate(df.columns, context="fitting data")
        resolved = self.specification.resolve(df.columns)

        self.resolved_ = resolved
        self.levels_ = {}
        for column in resolved.referenced_columns():
            if is_categorical(df[column]):
                if column in self.levels:
                    levels = list(self.levels[column])
                else:
                    levels = column_levels(df[column])
                if not levels:
                    raise ValueError(f"Categorical column '{column}' has no levels")
                self.levels_[column] = levels

        self.design_info_ = self._design_info()
        self.feature_names_ = [
            name for name in self.design_info_.column_names if name != _PATSY_INTERCEPT
        ]

        design = self._build(df)

        self.scaler = None
        if self.scale and design.shape[1] > 0:
            # A model without intercept passes through the origin: scale only
            self.scaler = StandardScaler(with_mean=resolved.intercept)
            self.scaler.fit(design)

        self._is_fitted = True
        return self

    def transform(self, df: pd.DataFrame) -> np.ndarray:
        """
        Build the (scaled) design matrix for new rows.

        Args:
            df: Data with the same schema as the fitting data

        Returns:
            Array of shape (n_rows, n_design_columns)
        """
        if not self._is_fitted:
            raise ValueError("Preprocessor must be fitted before transform. Call fit() first.")

        design = self._build(df)
        if self.scaler is not None:
            design = self.scaler.transform(design)
        return design

    def fit_transform(self, df: pd.DataFrame) -> np.ndarray:
        self.fit(df)
        return self.transform(df)

    def get_feature_names(self) -> List[str]:
        if self.feature_names_ is None:
            raise ValueError("Preprocessor must be fitted first.")
        return list(self.feature_names_)

    def _design_info(self) -> DesignInfo:
        """
        Coding depends only on column kinds and levels, so patsy learns it
        from a template frame rather than the fitting rows.
        """
        n_rows = max([len(levels) for levels in self.levels_.values()] + [1])
        template = {}
        for column in self.resolved_.referenced_columns():
            if column in self.levels_:
                levels = self.levels_[column]
                values = [levels[i % len(levels)] for i in range(n_rows)]
                template[column] = pd.Categorical(values, categories=levels)
            else:
                template[column] = np.zeros(n_rows)
        template = pd.DataFrame(template, index=range(n_rows))

        termlist = self.resolved_.model_desc().rhs_termlist
        return design_matrix_builders(
            [termlist], lambda: iter([template]), eval_env=0, NA_action="raise"
        )[0]

    def _prepare_frame(self, df: pd.DataFrame) -> pd.DataFrame:
        frame = {}
        for column in self.resolved_.referenced_columns():
            series = df[column]
            n_missing = int(series.isna().sum())
            if n_missing:
                raise ValueError(f"Column '{column}' has {n_missing} missing values")

            if column not in self.levels_:
                if is_categorical(series):
                    raise ConfigurationError(
                        f"Column '{column}' was numeric in fitting data but has dtype {series.dtype}"
                    )
                frame[column] = series.to_numpy(dtype=float)
                continue

            levels = self.levels_[column]
            values = series.astype(object)
            unseen = set(values.unique()) - set(levels)
            if unseen:
                raise ConfigurationError(
                    f"Column '{column}' has levels {sorted(map(str, unseen))} not seen in fitting data"
                )
            frame[column] = pd.Categorical(values, categories=levels)
        return pd.DataFrame(frame, index=df.index)

    def _build(self, df: pd.DataFrame) -> np.ndarray:
        frame = self._prepare_frame(df)
        if not self.resolved_.terms:
            return np.empty((len(df), 0))

        try:
            matrix = build_design_matrices([self.design_info_], frame, NA_action="raise")[0]
        except PatsyError as exc:
            raise ValueError(f"Cannot build design for '{self.resolved_}': {exc}") from exc

        design = np.asarray(matrix, dtype=float)
        names = self.design_info_.column_names
        if _PATSY_INTERCEPT in names:
            design = np.delete(design, names.index(_PATSY_INTERCEPT), axis=1)
        return design

    def __getstate__(self):
        # patsy design objects do not pickle; they are rebuilt from the levels
        state = self.__dict__.copy()
        state['design_info_'] = None
        return state

    def __setstate__(self, state):
        self.__dict__.update(state)
        if self._is_fitted:
            self.design_info_ = self._design_info()

    def save(self, filepath: str) -> None:
        """
        Save the preprocessor state to disk.

        Args:
            filepath: Path to save the preprocessor
        """
        state = {
            'specification': self.specification,
            'scale': self.scale,
            'levels': self.levels,
            'resolved_': self.resolved_,
            'levels_': self.levels_,
            'feature_names_': self.feature_names_,
            'scaler': self.scaler,
            '_is_fitted': self._is_fitted
        }
        joblib.dump(state, filepath)
        logger.info(f"Preprocessor saved to {filepath}")

    @classmethod
    def load(cls, filepath: str) -> 'DesignPreprocessor':
        state = joblib.load(filepath)

        preprocessor = cls(
            specification=state['specification'],
            scale=state['scale'],
            levels=state['levels']
        )
        preprocessor.resolved_ = state['resolved_']
        preprocessor.levels_ = state['levels_']
        preprocessor.feature_names_ = state['feature_names_']
        preprocessor.scaler = state['scaler']
        preprocessor._is_fitted = state['_is_fitted']
        if preprocessor._is_fitted:
            preprocessor.design_info_ = preprocessor._design_info()

        logger.info(f"Preprocessor loaded from {filepath}")
        return preprocessor


def set_categorical_levels(df: pd.DataFrame, levels: Dict[str, Sequence[Any]]) -> pd.DataFrame:
    """
    Cast columns to category dtype with a fixed level ordering.

    Args:
        df: Input data
        levels: Column name -> ordered levels; the first level is the
            reference level in the design matrix

    Returns:
        Copy of the data with the columns converted

    Raises:
        ValueError: If a column is missing or holds values outside its levels
    """
    df = df.copy()
    for column, column_levels_ in levels.items():
        if column not in df.columns:
            raise ValueError(f"Cannot set levels of missing column '{column}'")

        column_levels_ = list(column_levels_)
        unknown = set(df[column].dropna().unique()) - set(column_levels_)
        if unknown:
            raise ValueError(f"Column '{column}' has values {sorted(map(str, unknown))} outside its levels")

        df[column] = pd.Categorical(df[column], categories=column_levels_)
        logger.info(f"Column '{column}' set to categorical with levels {column_levels_}")
    return df


def binarize_column(
    df: pd.DataFrame,
    column: str,
    threshold: Optional[float] = None,
    new_column: Optional[str] = None,
    labels: Tuple[str, str] = ("low", "high")
) -> pd.DataFrame:
    """
    Derive a two-level categorical column from a numeric one.

    Values strictly above the threshold map to the second label.

    Args:
        df: Input data
        column: Numeric source column
        threshold: Cut point (default: median of the column)
        new_column: Name of the derived column (default: '<column>_class')
        labels: (below-or-equal label, above label)

    Returns:
        Copy of the data with the derived column appended
    """
    if column not in df.columns:
        raise ValueError(f"Cannot binarize missing column '{column}'")
    if not pd.api.types.is_numeric_dtype(df[column]):
        raise ValueError(f"Cannot binarize non-numeric column '{column}'")

    if threshold is None:
        threshold = float(df[column].median())
    new_column = new_column or f"{column}_class"

    df = df.copy()
    derived = np.where(df[column] > threshold, labels[1], labels[0])
    df[new_column] = pd.Categorical(derived, categories=list(labels))

    counts = df[new_column].value_counts()
    logger.info(
        f"Binarized '{column}' at {threshold:.4f} into '{new_column}': "
        f"{counts.get(labels[0], 0)} {labels[0]} / {counts.get(labels[1], 0)} {labels[1]}"
    )
    return df


def split_train_test(
    df: pd.DataFrame,
    test_size: float = 0.2,
    seed: int = 42,
    stratify: Optional[str] = None
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Split rows into disjoint train and test sets.

    Args:
        df: Full dataset
        test_size: Fraction of rows held out for testing
        seed: Random seed for reproducibility
        stratify: Column to stratify the split on (optional)

    Returns:
        Tuple of (train_set, test_set)
    """
    train_set, test_set = train_test_split(
        df,
        test_size=test_size,
        random_state=seed,
        stratify=df[stratify] if stratify else None
    )
    logger.info(f"Train/Test split: {len(train_set)} train rows, {len(test_set)} test rows")
    return train_set, test_set


def prepare_pipeline(
    df: pd.DataFrame,
    categorical_levels: Optional[Dict[str, Sequence[Any]]] = None,
    binarize: Optional[Dict[str, Any]] = None,
    drop_columns: Optional[Sequence[str]] = None,
    test_size: float = 0.2,
    seed: int = 42,
    stratify: Optional[str] = None
) -> Dict[str, Any]:
    """
    Complete dataset preparation.

    Args:
        df: Raw DataFrame
        categorical_levels: Levels for categorical columns
        binarize: Keyword arguments for binarize_column (optional)
        drop_columns: Columns removed before splitting
        test_size: Fraction of rows held out for testing
        seed: Random seed
        stratify: Column to stratify the split on

    Returns:
        Dictionary containing:
            - data: Prepared full dataset
            - train_set, test_set: Split datasets
    """
    logger.info("=" * 60)
    logger.info("STARTING DATA PREPARATION")
    logger.info("=" * 60)

    if categorical_levels:
        df = set_categorical_levels(df, categorical_levels)

    if binarize:
        df = binarize_column(df, **binarize)

    if drop_columns:
        missing = [c for c in drop_columns if c not in df.columns]
        if missing:
            raise ValueError(f"Cannot drop missing columns: {missing}")
        df = df.drop(columns=list(drop_columns))

    train_set, test_set = split_train_test(df, test_size=test_size, seed=seed, stratify=stratify)

    result = {
        'data': df,
        'train_set': train_set,
        'test_set': test_set
    }

    logger.info("=" * 60)
    logger.info("PREPARATION COMPLETE")
    logger.info(f"  Training rows: {len(train_set)}")
    logger.info(f"  Test rows: {len(test_set)}")
    logger.info(f"  Columns: {df.shape[1]}")
    logger.info("=" * 60)

    return result


def print_preparation_summary(result: Dict[str, Any]) -> None:
    """
    Print a summary of the preparation results.

    Args:
        result: Dictionary from prepare_pipeline
    """
    data = result['data']
    categorical = [c for c in data.columns if is_categorical(data[c])]

    print("\n" + "=" * 50)
    print("PREPARATION SUMMARY")
    print("=" * 50)
    print(f"Training rows: {len(result['train_set'])}")
    print(f"Test rows: {len(result['test_set'])}")
    print(f"Columns: {data.shape[1]}")
    print(f"Categorical columns: {categorical if categorical else 'none'}")
    print("=" * 50 + "\n")
