"""
Test Suite for Evaluation Module
================================

Tests for fold assignment, scoring and the cross-validated evaluation engine.
"""

import math

import pytest
import numpy as np
import pandas as pd

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from cvselect.evaluation import (
    Metric,
    RankedResultTable,
    ScoreRecord,
    _fit_and_score,
    compute_score,
    evaluate,
    make_folds,
)
from cvselect.exceptions import ConfigurationError, FittingError
from cvselect.formula import Specification, parse_specification
from cvselect.model import Family, SpecificationModel


@pytest.fixture
def regression_sets():
    """1000 rows of y = 3*x1 - 2*x2 + noise, split 800/200."""
    rng = np.random.default_rng(42)
    x1 = rng.normal(size=1000)
    x2 = rng.normal(size=1000)
    y = 3 * x1 - 2 * x2 + rng.normal(scale=0.5, size=1000)
    df = pd.DataFrame({'x1': x1, 'x2': x2, 'y': y})
    return df.iloc[:800], df.iloc[800:]


@pytest.fixture
def classification_sets():
    """Two-level response driven by x, split 300/100."""
    rng = np.random.default_rng(7)
    x = rng.normal(size=400)
    p = 1 / (1 + np.exp(-3 * x))
    labels = np.where(rng.uniform(size=400) < p, 'high', 'low')
    df = pd.DataFrame({
        'x': x,
        'z': rng.normal(size=400),
        'demand': pd.Categorical(labels, categories=['low', 'high'])
    })
    return df.iloc[:300], df.iloc[300:]


class TestMetric:
    """Tests for metric direction and scoring."""

    def test_direction(self):
        assert Metric.RMSE.greater_is_better is False
        assert Metric.ACCURACY.greater_is_better is True
        assert Metric.RMSE.is_better(1.0, 2.0)
        assert Metric.ACCURACY.is_better(0.9, 0.8)
        assert not Metric.ACCURACY.is_better(0.8, 0.8)

    def test_family(self):
        assert Metric.RMSE.family is Family.CONTINUOUS
        assert Metric.ACCURACY.family is Family.BINARY

    def test_unknown_metric(self):
        with pytest.raises(ConfigurationError, match="Unknown metric"):
            Metric.from_value('auc')

    def test_rmse(self):
        assert compute_score('rmse', [1.0, 2.0, 3.0], [1.0, 2.0, 5.0]) == pytest.approx(math.sqrt(4 / 3))

    def test_accuracy(self):
        assert compute_score(Metric.ACCURACY, ['a', 'b', 'a', 'b'], ['a', 'b', 'b', 'b']) == 0.75


class TestMakeFolds:
    """Tests for fold assignment."""

    def test_every_row_in_exactly_one_fold(self):
        folds = make_folds(np.arange(103), fold_count=5)

        assert folds.shape == (103,)
        assert set(folds) == {0, 1, 2, 3, 4}
        sizes = np.bincount(folds)
        assert sizes.sum() == 103
        assert sizes.max() - sizes.min() <= 1

    def test_deterministic_under_seed(self):
        y = np.arange(100)

        np.testing.assert_array_equal(make_folds(y, seed=3), make_folds(y, seed=3))
        assert not np.array_equal(make_folds(y, seed=3), make_folds(y, seed=4))

    def test_stratified_for_binary(self):
        y = np.array(['a'] * 30 + ['b'] * 70)
        folds = make_folds(y, fold_count=5, family='binary', seed=0)

        for fold in range(5):
            in_fold = y[folds == fold]
            assert len(in_fold) == 20
            assert (in_fold == 'a').sum() == 6


class TestResultTable:
    """Tests for RankedResultTable."""

    @pytest.fixture
    def table(self):
        return RankedResultTable([
            ScoreRecord('y ~ 1', 'rmse', 3.5, 3.6, (3.5, 3.7)),
            ScoreRecord('y ~ x', 'rmse', 1.2, 1.25, (1.2, 1.3)),
            ScoreRecord('y ~ z', 'rmse', math.nan, error='boom'),
        ], 'rmse')

    def test_sequence_protocol(self, table):
        assert len(table) == 3
        assert table[1].specification == 'y ~ x'
        assert table.specifications == ['y ~ 1', 'y ~ x', 'y ~ z']
        assert table[2].failed
        assert not table[0].failed

    def test_to_frame(self, table):
        frame = table.to_frame()

        assert list(frame.columns) == ['specification', 'metric', 'score', 'cv_score', 'error']
        assert list(frame['specification']) == table.specifications

    def test_to_records(self, table):
        records = table.to_records()

        assert records[0]['fold_scores'] == [3.5, 3.7]
        assert records[2]['error'] == 'boom'


class TestEvaluateContinuous:
    """Tests for the engine with continuous responses."""

    def test_end_to_end_monotonic_rmse(self, regression_sets):
        train, test = regression_sets
        table = evaluate(
            'y', ['y ~ 1', 'y ~ x1', 'y ~ x1 + x2'], train, test,
            family='continuous', metric='rmse', fold_count=5
        )

        assert isinstance(table, RankedResultTable)
        assert table.specifications == ['y ~ 1', 'y ~ x1', 'y ~ x1 + x2']
        assert all(r.metric == 'rmse' for r in table)
        assert table[0].score > table[1].score > table[2].score
        assert table[2].score == min(table.scores)

    def test_known_best_specification(self):
        rng = np.random.default_rng(5)
        x = rng.uniform(0, 10, size=200)
        df = pd.DataFrame({'x': x, 'y': 2 * x + rng.normal(scale=0.1, size=200)})

        table = evaluate('y', ['y ~ x', 'y ~ 1'], df.iloc[:150], df.iloc[150:], 'continuous', 'rmse')

        assert table[0].score < table[1].score

    def test_scores_are_rounded(self, regression_sets):
        train, test = regression_sets
        table = evaluate('y', ['y ~ x1'], train, test, 'continuous', 'rmse')

        record = table[0]
        assert record.score == round(record.score, 2)
        assert record.cv_score == round(record.cv_score, 2)
        assert len(record.fold_scores) == 5

    def test_determinism(self, regression_sets):
        train, test = regression_sets
        specs = ['y ~ 1', 'y ~ x1', 'y ~ x1 * x2']

        first = evaluate('y', specs, train, test, 'continuous', 'rmse', seed=11)
        second = evaluate('y', specs, train, test, 'continuous', 'rmse', seed=11)

        assert first == second

    def test_order_preserved(self, regression_sets):
        train, test = regression_sets
        specs = ['y ~ x1 + x2', 'y ~ 1', 'y ~ x2', 'y ~ x1']

        forward = evaluate('y', specs, train, test, 'continuous', 'rmse')
        backward = evaluate('y', specs[::-1], train, test, 'continuous', 'rmse')

        assert forward.specifications == specs
        assert backward.specifications == specs[::-1]
        assert forward.scores == backward.scores[::-1]

    def test_parallel_matches_sequential(self, regression_sets):
        train, test = regression_sets
        specs = ['y ~ 1', 'y ~ x1', 'y ~ x2', 'y ~ x1 + x2']

        sequential = evaluate('y', specs, train, test, 'continuous', 'rmse')
        parallel = evaluate('y', specs, train, test, 'continuous', 'rmse', n_jobs=2)

        assert parallel == sequential

    def test_specification_objects_and_wildcard(self, regression_sets):
        train, test = regression_sets
        table = evaluate(
            'y',
            [Specification.build('y', 'x1', 'x2'), 'y ~ .'],
            train, test, 'continuous', 'rmse'
        )

        assert table.specifications == ['y ~ x1 + x2', 'y ~ .']
        assert table[0].score == table[1].score

    def test_no_intercept_at_default_scaling(self):
        """A model through the origin scores like the same line with an intercept."""
        rng = np.random.default_rng(11)
        x = rng.uniform(10, 20, size=500)
        df = pd.DataFrame({'x': x, 'y': 2 * x + rng.normal(scale=0.1, size=500)})

        table = evaluate('y', ['y ~ x - 1', 'y ~ x'], df.iloc[:400], df.iloc[400:], 'continuous', 'rmse')

        assert table[0].score < 0.2
        assert table[0].score == pytest.approx(table[1].score, abs=0.02)

    def test_wildcard_with_removed_column(self, regression_sets):
        train, test = regression_sets
        table = evaluate('y', ['y ~ . - x2', 'y ~ x1'], train, test, 'continuous', 'rmse')

        assert table.specifications == ['y ~ . - x2', 'y ~ x1']
        assert table[0].score == table[1].score

    def test_categorical_predictor(self):
        rng = np.random.default_rng(3)
        group = rng.choice(['a', 'b', 'c'], size=300)
        effect = pd.Series(group).map({'a': 0.0, 'b': 5.0, 'c': -5.0}).values
        df = pd.DataFrame({
            'group': pd.Categorical(group, categories=['a', 'b', 'c']),
            'y': effect + rng.normal(size=300)
        })

        table = evaluate('y', ['y ~ 1', 'y ~ group'], df.iloc[:240], df.iloc[240:], 'continuous', 'rmse')

        assert table[1].score < table[0].score


class TestEvaluateBinary:
    """Tests for the engine with binary responses."""

    def test_accuracy_prefers_informative_predictor(self, classification_sets):
        train, test = classification_sets
        table = evaluate(
            'demand', ['demand ~ 1', 'demand ~ x', 'demand ~ x + z'], train, test,
            family='binary', metric='accuracy'
        )

        assert table.specifications == ['demand ~ 1', 'demand ~ x', 'demand ~ x + z']
        assert all(r.metric == 'accuracy' for r in table)
        assert table[1].score > table[0].score
        assert all(0.0 <= r.score <= 1.0 for r in table)


class TestLeakageAndRefit:
    """Tests that test rows never influence fitting."""

    def test_test_values_do_not_change_fitted_model(self, regression_sets):
        train, test = regression_sets
        model = SpecificationModel('y ~ x1 + x2').fit(train)
        before = model.coefficients()

        permuted = test.copy()
        permuted['x1'] = np.random.default_rng(0).permutation(permuted['x1'].values)
        model.predict(permuted)

        pd.testing.assert_series_equal(model.coefficients(), before)
        np.testing.assert_array_almost_equal(
            model.preprocessor.scaler.mean_, train[['x1', 'x2']].mean().values
        )

    def test_cross_validation_ignores_test_set(self, regression_sets):
        train, test = regression_sets
        permuted = test.copy()
        permuted['y'] = np.random.default_rng(1).permutation(permuted['y'].values)

        original = evaluate('y', ['y ~ x1 + x2'], train, test, 'continuous', 'rmse')
        shuffled = evaluate('y', ['y ~ x1 + x2'], train, permuted, 'continuous', 'rmse')

        assert original[0].cv_score == shuffled[0].cv_score
        assert original[0].fold_scores == shuffled[0].fold_scores
        assert shuffled[0].score > original[0].score

    def test_refit_gives_same_test_score(self, regression_sets):
        train, test = regression_sets
        scores = []
        for _ in range(2):
            model = SpecificationModel('y ~ x1 * x2').fit(train)
            scores.append(compute_score('rmse', test['y'], model.predict(test)))

        assert scores[0] == scores[1]


class TestConfigurationErrors:
    """Tests for eager input validation."""

    def test_unknown_column(self, regression_sets):
        train, test = regression_sets
        with pytest.raises(ConfigurationError, match="nope"):
            evaluate('y', ['y ~ x1', 'y ~ x1 + nope'], train, test, 'continuous', 'rmse')

    def test_unknown_column_is_not_a_fitting_error(self, regression_sets):
        train, test = regression_sets
        with pytest.raises(ConfigurationError) as info:
            evaluate('y', ['y ~ nope'], train, test, 'continuous', 'rmse', on_error='record')
        assert not isinstance(info.value, FittingError)

    @pytest.mark.parametrize("family,metric", [
        ('continuous', 'accuracy'),
        ('binary', 'rmse'),
    ])
    def test_metric_family_mismatch(self, regression_sets, family, metric):
        train, test = regression_sets
        with pytest.raises(ConfigurationError, match="not valid"):
            evaluate('y', ['y ~ x1'], train, test, family, metric)

    def test_empty_test_set(self, regression_sets):
        train, test = regression_sets
        with pytest.raises(ConfigurationError, match="test_set is empty"):
            evaluate('y', ['y ~ x1'], train, test.iloc[:0], 'continuous', 'rmse')

    def test_empty_specifications(self, regression_sets):
        train, test = regression_sets
        with pytest.raises(ConfigurationError, match="At least one"):
            evaluate('y', [], train, test, 'continuous', 'rmse')

    @pytest.mark.parametrize("fold_count", [1, 0, -3, 2.5, True, 801])
    def test_invalid_fold_count(self, regression_sets, fold_count):
        train, test = regression_sets
        with pytest.raises(ConfigurationError, match="fold_count"):
            evaluate('y', ['y ~ x1'], train, test, 'continuous', 'rmse', fold_count=fold_count)

    def test_response_mismatch(self, regression_sets):
        train, test = regression_sets
        with pytest.raises(ConfigurationError, match="expected 'y'"):
            evaluate('y', ['x2 ~ x1'], train, test, 'continuous', 'rmse')

    def test_missing_response(self, regression_sets):
        train, test = regression_sets
        with pytest.raises(ConfigurationError, match="not found"):
            evaluate('w', ['w ~ x1'], train, test, 'continuous', 'rmse')

    def test_schema_mismatch(self, regression_sets):
        train, test = regression_sets
        with pytest.raises(ConfigurationError, match="schemas differ"):
            evaluate('y', ['y ~ x1'], train, test.drop(columns=['x2']), 'continuous', 'rmse')

    def test_non_numeric_continuous_response(self, classification_sets):
        train, test = classification_sets
        with pytest.raises(ConfigurationError, match="must be numeric"):
            evaluate('demand', ['demand ~ x'], train, test, 'continuous', 'rmse')

    def test_binary_response_needs_two_classes(self, regression_sets):
        train, test = regression_sets
        with pytest.raises(ConfigurationError, match="exactly 2 classes"):
            evaluate('y', ['y ~ x1'], train, test, 'binary', 'accuracy')

    def test_unseen_test_level(self):
        train = pd.DataFrame({'c': ['a', 'b'] * 10, 'y': np.arange(20, dtype=float)})
        test = pd.DataFrame({'c': ['a', 'z'], 'y': [1.0, 2.0]})
        with pytest.raises(ConfigurationError, match="absent from train_set"):
            evaluate('y', ['y ~ c'], train, test, 'continuous', 'rmse')

    def test_predictor_type_mismatch(self, regression_sets):
        train, test = regression_sets
        test = test.assign(x2=test['x2'].astype(str))
        with pytest.raises(ConfigurationError, match="differ on column 'x2'"):
            evaluate('y', ['y ~ x1', 'y ~ x2'], train, test, 'continuous', 'rmse', on_error='record')

    def test_removed_column_must_exist(self, regression_sets):
        train, test = regression_sets
        with pytest.raises(ConfigurationError, match="nope"):
            evaluate('y', ['y ~ . - nope'], train, test, 'continuous', 'rmse')

    def test_unknown_error_policy(self, regression_sets):
        train, test = regression_sets
        with pytest.raises(ConfigurationError, match="on_error"):
            evaluate('y', ['y ~ x1'], train, test, 'continuous', 'rmse', on_error='ignore')


class TestFittingErrors:
    """Tests for fail-fast and collect-all failure policies."""

    @pytest.fixture
    def sets_with_gap(self, regression_sets):
        train, test = regression_sets
        train = train.copy()
        train.iloc[::50, train.columns.get_loc('x2')] = np.nan
        return train, test

    def test_fail_fast(self, sets_with_gap):
        train, test = sets_with_gap
        with pytest.raises(FittingError) as info:
            evaluate('y', ['y ~ x1', 'y ~ x2'], train, test, 'continuous', 'rmse')

        assert info.value.specification == 'y ~ x2'
        assert 'y ~ x2' in str(info.value)

    def test_collect_all(self, sets_with_gap):
        train, test = sets_with_gap
        table = evaluate(
            'y', ['y ~ x1', 'y ~ x2', 'y ~ 1'], train, test, 'continuous', 'rmse',
            on_error='record'
        )

        assert table.specifications == ['y ~ x1', 'y ~ x2', 'y ~ 1']
        assert not table[0].failed
        assert table[1].failed
        assert math.isnan(table[1].score)
        assert 'y ~ x2' in table[1].error
        assert not table[2].failed

    def test_missing_categorical_value(self):
        rng = np.random.default_rng(5)
        group = rng.choice(['a', 'b'], size=200).astype(object)
        group[::20] = None
        df = pd.DataFrame({'group': group, 'y': rng.normal(size=200)})

        with pytest.raises(FittingError, match="missing values"):
            evaluate('y', ['y ~ group'], df.iloc[:150], df.iloc[150:], 'continuous', 'rmse')

    def test_configuration_error_during_fit_is_not_relabelled(self):
        fit_set = pd.DataFrame({'c': ['a', 'b'] * 5, 'y': np.arange(10, dtype=float)})
        score_set = pd.DataFrame({'c': ['a', 'z'], 'y': [1.0, 2.0]})

        with pytest.raises(ConfigurationError, match="not seen"):
            _fit_and_score(
                parse_specification('y ~ c'), Family.CONTINUOUS, Metric.RMSE,
                fit_set, score_set, {'c': ['a', 'b']}, scale=True, max_iter=100
            )


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
