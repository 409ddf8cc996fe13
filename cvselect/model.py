"""
Model Training Module
=====================

Fits one model specification with the estimator matching its family.

Features:
    - Ordinary least squares for continuous responses (LinearRegression)
    - Unpenalized maximum-likelihood logistic regression for binary responses
    - Intercept-only models via DummyRegressor / DummyClassifier
    - Non-convergence escalated to FittingError
    - Model persistence (save/load)
"""

import logging
import warnings
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Union

import joblib
import numpy as np
import pandas as pd
from sklearn.dummy import DummyClassifier, DummyRegressor
from sklearn.exceptions import ConvergenceWarning
from sklearn.linear_model import LinearRegression, LogisticRegression

from .exceptions import ConfigurationError, FittingError
from .formula import Specification, as_specification
from .preprocessing import DesignPreprocessor

logger = logging.getLogger(__name__)

INTERCEPT_NAME = "(Intercept)"


class Family(Enum):
    """Prediction family; selects the fitting procedure."""

    CONTINUOUS = "continuous"
    BINARY = "binary"

    @classmethod
    def from_value(cls, value: Union[str, 'Family']) -> 'Family':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ConfigurationError(
                f"Unknown family {value!r}. Choose from: {[f.value for f in cls]}"
            ) from None


class SpecificationModel:
    """
    A fitted model for one specification.

    The design matrix, including any centering and scaling, is learned from
    the data passed to ``fit`` only; ``predict`` reuses those statistics.
    Coefficients are therefore on the scaled design when ``scale`` is set.
    """

    def __init__(
        self,
        specification: Union[str, Specification],
        family: Union[str, Family] = Family.CONTINUOUS,
        scale: bool = True,
        max_iter: int = 1000,
        levels: Optional[Dict[str, Sequence[Any]]] = None
    ):
        """
        Initialize the model.

        Args:
            specification: Model specification (object or text form)
            family: Continuous or binary response
            scale: Center and scale the design columns
            max_iter: Iteration limit for the logistic solver
            levels: Fixed categorical level ordering passed to the preprocessor
        """
        self.specification = as_specification(specification)
        self.family = Family.from_value(family)
        self.scale = scale
        self.max_iter = max_iter
        self.levels = levels

        self.preprocessor: Optional[DesignPreprocessor] = None
        self.estimator = None
        self.n_features_in_: Optional[int] = None
        self._is_fitted = False

    def _create_estimator(self, n_features: int):
        intercept = self.specification.intercept
        if n_features == 0:
            if not intercept:
                raise ConfigurationError(f"Specification '{self.specification}' has an empty design")
            if self.family is Family.CONTINUOUS:
                return DummyRegressor(strategy="mean")
            return DummyClassifier(strategy="most_frequent")

        if self.family is Family.CONTINUOUS:
            return LinearRegression(fit_intercept=intercept)
        # C=inf removes the penalty: plain maximum likelihood
        return LogisticRegression(C=np.inf, fit_intercept=intercept, max_iter=self.max_iter)

    @staticmethod
    def _as_input(X: np.ndarray) -> np.ndarray:
        # Dummy estimators still need a 2D X
        if X.shape[1] == 0:
            return np.zeros((X.shape[0], 1))
        return X

    def fit(self, df: pd.DataFrame) -> 'SpecificationModel':
        """
        Fit the specification on the given rows.

        Args:
            df: Fitting data containing the response and predictors

        Returns:
            Self for method chaining

        Raises:
            FittingError: If the solver does not converge
            ValueError: For degenerate data (e.g. a single response class)
        """
        response = self.specification.response
        y = np.asarray(df[response])

        if self.family is Family.BINARY:
            n_classes = len(pd.unique(df[response].dropna()))
            if n_classes != 2:
                raise ValueError(
                    f"Binary response '{response}' needs exactly 2 classes in fitting data, found {n_classes}"
                )

        self.preprocessor = DesignPreprocessor(self.specification, scale=self.scale, levels=self.levels)
        X = self.preprocessor.fit_transform(df)
        self.n_features_in_ = X.shape[1]

        self.estimator = self._create_estimator(X.shape[1])
        with warnings.catch_warnings():
            warnings.simplefilter("error", ConvergenceWarning)
            try:
                self.estimator.fit(self._as_input(X), y)
            except ConvergenceWarning as exc:
                raise FittingError(
                    f"Solver did not converge for '{self.specification}': {exc}",
                    specification=str(self.specification)
                ) from exc

        if isinstance(self.estimator, LinearRegression):
            full_rank = X.shape[1]
            if self.estimator.rank_ < full_rank:
                logger.warning(
                    f"Rank-deficient design for '{self.specification}': "
                    f"rank {self.estimator.rank_} < {full_rank} columns"
                )

        self._is_fitted = True
        logger.debug(f"Fitted '{self.specification}' on {len(df)} rows, {X.shape[1]} design columns")
        return self

    def predict(self, df: pd.DataFrame) -> np.ndarray:
        """
        Predict the response for new rows.

        Returns:
            Numeric predictions (continuous) or class labels (binary)
        """
        if not self._is_fitted:
            raise ValueError("Model must be trained before prediction. Call fit() first.")

        X = self.preprocessor.transform(df)
        return self.estimator.predict(self._as_input(X))

    def coefficients(self) -> pd.Series:
        """
        Fitted coefficients indexed by design column name.

        The intercept, when present, is listed first as '(Intercept)'. For
        binary models coefficients are log-odds of the second class.
        """
        if not self._is_fitted:
            raise ValueError("Model must be trained first.")

        if isinstance(self.estimator, DummyRegressor):
            return pd.Series({INTERCEPT_NAME: float(np.ravel(self.estimator.constant_)[0])})
        if isinstance(self.estimator, DummyClassifier):
            prior = float(self.estimator.class_prior_[1])
            return pd.Series({INTERCEPT_NAME: float(np.log(prior / (1.0 - prior)))})

        values = np.ravel(self.estimator.coef_)
        series = pd.Series(values, index=self.preprocessor.get_feature_names(), dtype=float)
        if self.specification.intercept:
            intercept = float(np.ravel(self.estimator.intercept_)[0])
            series = pd.concat([pd.Series({INTERCEPT_NAME: intercept}), series])
        return series

    def save(self, filepath: str) -> None:
        """
        Save the trained model to disk.

        Args:
            filepath: Path to save the model
        """
        if not self._is_fitted:
            raise ValueError("Cannot save untrained model.")

        state = {
            'specification': self.specification,
            'family': self.family.value,
            'scale': self.scale,
            'max_iter': self.max_iter,
            'levels': self.levels,
            'preprocessor': self.preprocessor,
            'estimator': self.estimator,
            'n_features_in_': self.n_features_in_,
            '_is_fitted': self._is_fitted
        }

        Path(filepath).parent.mkdir(parents=True, exist_ok=True)
        joblib.dump(state, filepath)
        logger.info(f"Model saved to {filepath}")

    @classmethod
    def load(cls, filepath: str) -> 'SpecificationModel':
        """
        Load a trained model from disk.

        Args:
            filepath: Path to the saved model

        Returns:
            Loaded SpecificationModel instance
        """
        state = joblib.load(filepath)

        model = cls(
            specification=state['specification'],
            family=state['family'],
            scale=state['scale'],
            max_iter=state['max_iter'],
            levels=state['levels']
        )
        model.preprocessor = state['preprocessor']
        model.estimator = state['estimator']
        model.n_features_in_ = state['n_features_in_']
        model._is_fitted = state['_is_fitted']

        logger.info(f"Model loaded from {filepath}")
        return model


def train_model(
    specification: Union[str, Specification],
    train_set: pd.DataFrame,
    family: Union[str, Family],
    config: Dict[str, Any],
    save_path: Optional[str] = None
) -> SpecificationModel:
    """
    Train a single specification using configuration parameters.

    Args:
        specification: Model specification
        train_set: Training data
        family: Continuous or binary response
        config: Configuration dictionary (reads the 'evaluation' section)
        save_path: Path to save the trained model (optional)

    Returns:
        Trained SpecificationModel
    """
    eval_config = config.get('evaluation', {})

    model = SpecificationModel(
        specification,
        family=family,
        scale=eval_config.get('scale', True),
        max_iter=eval_config.get('max_iter', 1000)
    )
    model.fit(train_set)

    if save_path:
        model.save(save_path)

    return model
