"""
Model Evaluation Module
=======================

Cross-validated scoring of candidate model specifications.

For every specification, in input order, the engine:
    1. Scores the specification on each of k folds of the training set,
       fitting preprocessing and model on the remaining folds only
    2. Averages the fold scores into a cross-validation estimate
    3. Refits on the full training set and scores once on the test set

The test-set score is the reported number. The engine only measures;
choosing the best candidate is left to the caller (see reporting.select_best).

Functions:
    - compute_score: RMSE or accuracy for one set of predictions
    - make_folds: Deterministic (stratified) fold assignment
    - evaluate: Run the engine and return a RankedResultTable
"""

import logging
import math
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.metrics import accuracy_score, mean_squared_error
from sklearn.model_selection import KFold, StratifiedKFold

from .exceptions import ConfigurationError, FittingError
from .formula import Specification, as_specification
from .model import Family, SpecificationModel
from .preprocessing import column_levels, is_categorical

logger = logging.getLogger(__name__)

SCORE_PRECISION = 2
ERROR_POLICIES = ("raise", "record")


class Metric(Enum):
    """Scoring metric; each one is tied to a family and a direction."""

    RMSE = "rmse"
    ACCURACY = "accuracy"

    @classmethod
    def from_value(cls, value: Union[str, 'Metric']) -> 'Metric':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ConfigurationError(
                f"Unknown metric {value!r}. Choose from: {[m.value for m in cls]}"
            ) from None

    @property
    def greater_is_better(self) -> bool:
        return self is Metric.ACCURACY

    @property
    def family(self) -> Family:
        return Family.CONTINUOUS if self is Metric.RMSE else Family.BINARY

    def is_better(self, score: float, other: float) -> bool:
        """Strict comparison in this metric's direction."""
        if self.greater_is_better:
            return score > other
        return score < other


def compute_score(metric: Union[str, Metric], y_true, y_pred) -> float:
    """
    Score predictions with the given metric.

    Args:
        metric: RMSE or accuracy
        y_true: Observed response values
        y_pred: Predicted values or class labels

    Returns:
        Unrounded score
    """
    metric = Metric.from_value(metric)
    y_true = np.asarray(y_true)
    y_pred = np.asarray(y_pred)

    if metric is Metric.RMSE:
        return float(np.sqrt(mean_squared_error(y_true, y_pred)))
    return float(accuracy_score(y_true, y_pred))


def make_folds(
    response_values,
    fold_count: int = 5,
    family: Union[str, Family] = Family.CONTINUOUS,
    seed: int = 42
) -> np.ndarray:
    """
    Assign every training row to exactly one of ``fold_count`` folds.

    Binary responses are stratified so each fold keeps the overall class
    ratio as closely as integer division allows. The assignment is fully
    determined by the seed.

    Args:
        response_values: Response column of the training set
        fold_count: Number of folds (>= 2)
        family: Continuous or binary response
        seed: Random seed for the shuffle

    Returns:
        Integer array of fold ids (0..fold_count-1), one per row
    """
    family = Family.from_value(family)
    y = np.asarray(response_values)
    n_rows = len(y)

    if family is Family.BINARY:
        splitter = StratifiedKFold(n_splits=fold_count, shuffle=True, random_state=seed)
        splits = splitter.split(np.zeros(n_rows), y)
    else:
        splitter = KFold(n_splits=fold_count, shuffle=True, random_state=seed)
        splits = splitter.split(np.zeros(n_rows))

    folds = np.full(n_rows, -1, dtype=int)
    for fold_id, (_, held_out) in enumerate(splits):
        folds[held_out] = fold_id
    return folds


@dataclass(frozen=True)
class ScoreRecord:
    """
    Evaluation result for one specification.

    ``score`` is the test-set score; ``cv_score`` is the mean fold score.
    Under the collect-all policy a failed specification carries its error
    message and NaN scores.
    """

    specification: str
    metric: str
    score: float
    cv_score: float = math.nan
    fold_scores: Tuple[float, ...] = ()
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class RankedResultTable:
    """Score records in specification input order."""

    def __init__(self, records: Sequence[ScoreRecord], metric: Union[str, Metric]):
        self._records = tuple(records)
        self.metric = Metric.from_value(metric)

    def __iter__(self) -> Iterator[ScoreRecord]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __getitem__(self, index: int) -> ScoreRecord:
        return self._records[index]

    def __eq__(self, other) -> bool:
        if not isinstance(other, RankedResultTable):
            return NotImplemented
        return self.metric is other.metric and self._records == other._records

    def __repr__(self) -> str:
        return f"RankedResultTable(metric={self.metric.value!r}, records={list(self._records)!r})"

    @property
    def specifications(self) -> List[str]:
        return [r.specification for r in self._records]

    @property
    def scores(self) -> List[float]:
        return [r.score for r in self._records]

    def to_records(self) -> List[Dict[str, Any]]:
        records = []
        for record in self._records:
            row = asdict(record)
            row['fold_scores'] = list(record.fold_scores)
            records.append(row)
        return records

    def to_frame(self) -> pd.DataFrame:
        columns = ['specification', 'metric', 'score', 'cv_score', 'error']
        return pd.DataFrame(
            [{c: getattr(r, c) for c in columns} for r in self._records],
            columns=columns
        )


def _check_response(
    response: str,
    train_set: pd.DataFrame,
    test_set: pd.DataFrame,
    family: Family,
    fold_count: int
) -> None:
    for name, frame in (("train_set", train_set), ("test_set", test_set)):
        if response not in frame.columns:
            raise ConfigurationError(f"Response column '{response}' not found in {name}")
        if frame[response].isna().any():
            raise ConfigurationError(f"Response column '{response}' has missing values in {name}")

    if family is Family.CONTINUOUS:
        series = train_set[response]
        if is_categorical(series) or pd.api.types.is_bool_dtype(series):
            raise ConfigurationError(
                f"Continuous response '{response}' must be numeric, got {series.dtype}"
            )
        if fold_count > len(train_set):
            raise ConfigurationError(
                f"fold_count={fold_count} exceeds the {len(train_set)} training rows"
            )
        return

    series = train_set[response]
    if isinstance(series.dtype, pd.CategoricalDtype) and len(series.cat.categories) != 2:
        raise ConfigurationError(
            f"Binary response '{response}' must have 2 levels, has {list(series.cat.categories)}"
        )
    counts = series.astype(object).value_counts()
    if len(counts) != 2:
        raise ConfigurationError(
            f"Binary response '{response}' must have exactly 2 classes in train_set, found {len(counts)}"
        )
    unseen = set(test_set[response].astype(object).unique()) - set(counts.index)
    if unseen:
        raise ConfigurationError(
            f"test_set response '{response}' has classes {sorted(map(str, unseen))} absent from train_set"
        )
    if fold_count > counts.min():
        raise ConfigurationError(
            f"fold_count={fold_count} exceeds the {counts.min()} rows of the smallest class of '{response}'"
        )


def _validate_inputs(
    response: str,
    specifications: Sequence[Union[str, Specification]],
    train_set: pd.DataFrame,
    test_set: pd.DataFrame,
    family: Union[str, Family],
    metric: Union[str, Metric],
    fold_count: int,
    on_error: str
) -> Tuple[List[Specification], Family, Metric, Dict[str, List[Any]]]:
    """Eager checks; every failure here is a ConfigurationError."""
    family = Family.from_value(family)
    metric = Metric.from_value(metric)

    if metric.family is not family:
        raise ConfigurationError(
            f"Metric '{metric.value}' is not valid for the {family.value} family"
        )
    if on_error not in ERROR_POLICIES:
        raise ConfigurationError(f"Unknown on_error policy {on_error!r}. Choose from: {ERROR_POLICIES}")
    if isinstance(fold_count, bool) or not isinstance(fold_count, (int, np.integer)) or fold_count < 2:
        raise ConfigurationError(f"fold_count must be an integer >= 2, got {fold_count!r}")

    specifications = [as_specification(s) for s in specifications]
    if not specifications:
        raise ConfigurationError("At least one specification is required")
    if len(test_set) == 0:
        raise ConfigurationError("test_set is empty")
    if len(train_set) == 0:
        raise ConfigurationError("train_set is empty")
    if set(train_set.columns) != set(test_set.columns):
        difference = sorted(set(train_set.columns) ^ set(test_set.columns))
        raise ConfigurationError(f"train_set and test_set schemas differ on columns {difference}")

    _check_response(response, train_set, test_set, family, fold_count)

    referenced: List[str] = []
    for spec in specifications:
        if spec.response != response:
            raise ConfigurationError(
                f"Specification '{spec}' has response '{spec.response}', expected '{response}'"
            )
        spec.validate(train_set.columns, context="train_set")
        spec.validate(test_set.columns, context="test_set")
        resolved = spec.resolve(train_set.columns)
        referenced.extend(c for c in resolved.referenced_columns() if c not in referenced)

    # Categorical levels come from the whole training set so every fold
    # builds the same design columns.
    levels: Dict[str, List[Any]] = {}
    for column in referenced:
        if is_categorical(train_set[column]) != is_categorical(test_set[column]):
            raise ConfigurationError(
                f"train_set and test_set schemas differ on column '{column}': "
                f"{train_set[column].dtype} vs {test_set[column].dtype}"
            )
        if not is_categorical(train_set[column]):
            continue
        levels[column] = column_levels(train_set[column])
        unseen = set(test_set[column].dropna().astype(object).unique()) - set(levels[column])
        if unseen:
            raise ConfigurationError(
                f"test_set column '{column}' has levels {sorted(map(str, unseen))} absent from train_set"
            )

    return specifications, family, metric, levels


def _fit_and_score(
    specification: Specification,
    family: Family,
    metric: Metric,
    fit_set: pd.DataFrame,
    score_set: pd.DataFrame,
    levels: Dict[str, List[Any]],
    scale: bool,
    max_iter: int,
    fold: Optional[int] = None
) -> float:
    stage = f"fold {fold}" if fold is not None else "final refit"
    try:
        model = SpecificationModel(
            specification, family=family, scale=scale, max_iter=max_iter, levels=levels
        )
        model.fit(fit_set)
        y_pred = model.predict(score_set)
        return compute_score(metric, score_set[specification.response], y_pred)
    except ConfigurationError:
        raise
    except (FittingError, ValueError, np.linalg.LinAlgError) as exc:
        raise FittingError(
            f"Fitting '{specification}' failed on {stage}: {exc}",
            specification=str(specification),
            fold=fold
        ) from exc


def _evaluate_specification(
    specification: Specification,
    train_set: pd.DataFrame,
    test_set: pd.DataFrame,
    folds: np.ndarray,
    fold_count: int,
    family: Family,
    metric: Metric,
    levels: Dict[str, List[Any]],
    scale: bool,
    max_iter: int,
    on_error: str
) -> ScoreRecord:
    try:
        fold_scores = []
        for fold in range(fold_count):
            held_out = folds == fold
            fold_scores.append(_fit_and_score(
                specification, family, metric,
                train_set.iloc[~held_out], train_set.iloc[held_out],
                levels, scale, max_iter, fold=fold + 1
            ))
        cv_score = float(np.mean(fold_scores))

        test_score = _fit_and_score(
            specification, family, metric, train_set, test_set, levels, scale, max_iter
        )
    except FittingError as exc:
        if on_error == "raise":
            raise
        logger.warning(f"Recording failure for '{specification}': {exc}")
        return ScoreRecord(
            specification=str(specification),
            metric=metric.value,
            score=math.nan,
            error=str(exc)
        )

    logger.info(
        f"  {str(specification):<40} cv {metric.value}={cv_score:.4f}  "
        f"test {metric.value}={test_score:.4f}"
    )
    return ScoreRecord(
        specification=str(specification),
        metric=metric.value,
        score=round(test_score, SCORE_PRECISION),
        cv_score=round(cv_score, SCORE_PRECISION),
        fold_scores=tuple(round(s, SCORE_PRECISION) for s in fold_scores)
    )


def evaluate(
    response: str,
    specifications: Sequence[Union[str, Specification]],
    train_set: pd.DataFrame,
    test_set: pd.DataFrame,
    family: Union[str, Family],
    metric: Union[str, Metric],
    fold_count: int = 5,
    seed: int = 42,
    on_error: str = "raise",
    n_jobs: Optional[int] = None,
    scale: bool = True,
    max_iter: int = 1000
) -> RankedResultTable:
    """
    Score candidate specifications with k-fold cross-validation and a
    held-out test set.

    Args:
        response: Response column, present in both sets
        specifications: Candidates (objects or text form), in report order
        train_set: Rows used for cross-validation and the final refit
        test_set: Held-out rows scored once per specification
        family: 'continuous' (OLS) or 'binary' (logistic regression)
        metric: 'rmse' (continuous) or 'accuracy' (binary)
        fold_count: Number of cross-validation folds
        seed: Seed for the fold assignment
        on_error: 'raise' aborts on the first fitting error; 'record' keeps
            going and marks the failed specification in its record
        n_jobs: Evaluate specifications in parallel with joblib (optional)
        scale: Center and scale design columns (statistics from fitting rows only)
        max_iter: Iteration limit for the logistic solver

    Returns:
        RankedResultTable with one record per specification, in input order

    Raises:
        ConfigurationError: Invalid inputs, before any fitting
        FittingError: A specification failed and on_error='raise'
    """
    specifications, family, metric, levels = _validate_inputs(
        response, specifications, train_set, test_set, family, metric, fold_count, on_error
    )

    logger.info("=" * 60)
    logger.info(f"EVALUATING {len(specifications)} SPECIFICATIONS FOR '{response}'")
    logger.info("=" * 60)
    logger.info(f"Family: {family.value} | Metric: {metric.value} | Folds: {fold_count} | Seed: {seed}")
    logger.info(f"Training rows: {len(train_set)} | Test rows: {len(test_set)}")

    # One partition shared by every specification in this run
    folds = make_folds(train_set[response], fold_count=fold_count, family=family, seed=seed)

    arguments = dict(
        train_set=train_set,
        test_set=test_set,
        folds=folds,
        fold_count=fold_count,
        family=family,
        metric=metric,
        levels=levels,
        scale=scale,
        max_iter=max_iter,
        on_error=on_error
    )

    if n_jobs is not None and n_jobs != 1:
        records = Parallel(n_jobs=n_jobs)(
            delayed(_evaluate_specification)(spec, **arguments) for spec in specifications
        )
    else:
        records = [_evaluate_specification(spec, **arguments) for spec in specifications]

    table = RankedResultTable(records, metric)

    failed = sum(r.failed for r in table)
    logger.info("=" * 60)
    logger.info(f"EVALUATION COMPLETE: {len(table) - failed} scored, {failed} failed")
    logger.info("=" * 60)

    return table
