"""
Cross-Validated Model Selection
===============================

Scores candidate linear and logistic regression specifications with k-fold
cross-validation and a held-out test set.

Modules:
    - formula: Model specifications and their text form
    - preprocessing: Design matrices, scaling and dataset preparation
    - model: Fitting a single specification
    - evaluation: The cross-validated evaluation engine
    - data_loader: Configuration and CSV ingestion
    - eda: Text-only exploratory summary
    - reporting: Best candidate selection and result export
"""

from .evaluation import Metric, RankedResultTable, ScoreRecord, evaluate
from .exceptions import ConfigurationError, FittingError
from .formula import Specification, parse_specification
from .model import Family, SpecificationModel

__version__ = "1.0.0"
