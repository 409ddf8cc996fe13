"""
Test Suite for Model Module
===========================

Tests for fitting single specifications with SpecificationModel.
"""

import pytest
import numpy as np
import pandas as pd
import tempfile
import os

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from cvselect.exceptions import ConfigurationError
from cvselect.model import Family, SpecificationModel, train_model


@pytest.fixture
def linear_data():
    """Exact linear relationship y = 1 + 2*x1 - 3*x2."""
    rng = np.random.default_rng(0)
    x1 = rng.normal(size=200)
    x2 = rng.normal(size=200)
    return pd.DataFrame({'x1': x1, 'x2': x2, 'y': 1 + 2 * x1 - 3 * x2})


@pytest.fixture
def binary_data():
    """Noisy logistic relationship between x and a two-level label."""
    rng = np.random.default_rng(1)
    x = rng.normal(size=400)
    p = 1 / (1 + np.exp(-2 * x))
    labels = np.where(rng.uniform(size=400) < p, 'yes', 'no')
    return pd.DataFrame({
        'x': x,
        'noise': rng.normal(size=400),
        'label': pd.Categorical(labels, categories=['no', 'yes'])
    })


class TestFamily:
    """Tests for the Family enum."""

    def test_from_value(self):
        assert Family.from_value('continuous') is Family.CONTINUOUS
        assert Family.from_value('BINARY') is Family.BINARY
        assert Family.from_value(Family.BINARY) is Family.BINARY

    def test_unknown_family(self):
        with pytest.raises(ConfigurationError, match="Unknown family"):
            Family.from_value('poisson')


class TestContinuousModel:
    """Tests for ordinary least squares fits."""

    def test_recovers_coefficients(self, linear_data):
        model = SpecificationModel("y ~ x1 + x2", family='continuous', scale=False)
        model.fit(linear_data)

        coefficients = model.coefficients()
        assert list(coefficients.index) == ['(Intercept)', 'x1', 'x2']
        np.testing.assert_array_almost_equal(coefficients.values, [1.0, 2.0, -3.0])

    def test_scaled_fit_predicts_the_same(self, linear_data):
        scaled = SpecificationModel("y ~ x1 + x2", scale=True).fit(linear_data)
        raw = SpecificationModel("y ~ x1 + x2", scale=False).fit(linear_data)

        np.testing.assert_array_almost_equal(
            scaled.predict(linear_data), raw.predict(linear_data)
        )

    def test_intercept_only_predicts_mean(self, linear_data):
        model = SpecificationModel("y ~ 1").fit(linear_data)

        predictions = model.predict(linear_data.head(5))
        np.testing.assert_array_almost_equal(predictions, [linear_data['y'].mean()] * 5)
        assert model.coefficients()['(Intercept)'] == pytest.approx(linear_data['y'].mean())

    def test_without_intercept(self, linear_data):
        model = SpecificationModel("y ~ x1 + x2 - 1", scale=False).fit(linear_data)

        assert '(Intercept)' not in model.coefficients().index
        assert model.estimator.fit_intercept is False

    def test_without_intercept_scaled_predicts_the_same(self):
        rng = np.random.default_rng(4)
        x = rng.uniform(10, 20, size=200)
        df = pd.DataFrame({'x': x, 'y': 2 * x + rng.normal(scale=0.1, size=200)})

        scaled = SpecificationModel("y ~ x - 1", scale=True).fit(df)
        raw = SpecificationModel("y ~ x - 1", scale=False).fit(df)

        np.testing.assert_array_almost_equal(scaled.predict(df), raw.predict(df))
        assert raw.coefficients()['x'] == pytest.approx(2.0, abs=0.01)

    def test_missing_categorical_value(self):
        df = pd.DataFrame({
            'g': ['a', 'b', np.nan, 'b', 'a', 'b'],
            'y': [29.0, 30.0, 31.0, 30.0, 29.0, 30.0]
        })
        with pytest.raises(ValueError, match="missing values"):
            SpecificationModel("y ~ g").fit(df)

    def test_categorical_coefficient_names(self):
        df = pd.DataFrame({'g': ['a', 'b', 'a', 'b'], 'y': [1.0, 3.0, 1.0, 3.0]})
        model = SpecificationModel("y ~ g", scale=False).fit(df)

        assert list(model.coefficients().index) == ['(Intercept)', 'g[T.b]']
        assert model.coefficients()['g[T.b]'] == pytest.approx(2.0)

    def test_predict_before_fit(self, linear_data):
        model = SpecificationModel("y ~ x1")
        with pytest.raises(ValueError, match="must be trained"):
            model.predict(linear_data)

    def test_refit_is_deterministic(self, linear_data):
        first = SpecificationModel("y ~ x1").fit(linear_data).coefficients()
        second = SpecificationModel("y ~ x1").fit(linear_data).coefficients()

        pd.testing.assert_series_equal(first, second)

    def test_save_load(self, linear_data):
        """Test saving and loading a fitted model."""
        model = SpecificationModel("y ~ x1 * x2").fit(linear_data)

        with tempfile.NamedTemporaryFile(suffix='.joblib', delete=False) as f:
            temp_path = f.name

        try:
            model.save(temp_path)
            loaded = SpecificationModel.load(temp_path)

            assert loaded.family is Family.CONTINUOUS
            assert str(loaded.specification) == "y ~ x1 + x2 + x1:x2"
            np.testing.assert_array_almost_equal(
                loaded.predict(linear_data), model.predict(linear_data)
            )
        finally:
            os.unlink(temp_path)

    def test_save_untrained(self):
        with pytest.raises(ValueError, match="untrained"):
            SpecificationModel("y ~ x1").save("unused.joblib")


class TestBinaryModel:
    """Tests for logistic regression fits."""

    def test_predicts_labels(self, binary_data):
        model = SpecificationModel("label ~ x", family=Family.BINARY).fit(binary_data)
        predictions = model.predict(binary_data)

        assert set(predictions) <= {'no', 'yes'}
        assert (predictions == np.asarray(binary_data['label'])).mean() > 0.7

    def test_positive_slope(self, binary_data):
        model = SpecificationModel("label ~ x", family='binary').fit(binary_data)
        assert model.coefficients()['x'] > 0

    def test_intercept_only_predicts_majority(self, binary_data):
        model = SpecificationModel("label ~ 1", family='binary').fit(binary_data)

        majority = binary_data['label'].value_counts().idxmax()
        assert set(model.predict(binary_data)) == {majority}
        assert '(Intercept)' in model.coefficients().index

    def test_single_class_fails(self, binary_data):
        one_class = binary_data[binary_data['label'] == 'yes']
        with pytest.raises(ValueError, match="exactly 2 classes"):
            SpecificationModel("label ~ x", family='binary').fit(one_class)


class TestTrainModel:
    """Tests for the train_model function."""

    def test_uses_config(self, linear_data):
        config = {'evaluation': {'scale': False, 'max_iter': 50}}
        model = train_model("y ~ x1", linear_data, 'continuous', config)

        assert model.scale is False
        assert model.max_iter == 50
        assert model._is_fitted

    def test_save_path(self, linear_data, tmp_path):
        save_path = tmp_path / "models" / "y_x1.joblib"
        train_model("y ~ x1", linear_data, 'continuous', {}, save_path=str(save_path))

        assert save_path.exists()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
