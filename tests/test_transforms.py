# tests/test_transforms.py

import numpy as np
import pandas as pd
import pytest

from agrotrial.constants import THETA_FLOOR
from agrotrial.exceptions import InsufficientDataError
from agrotrial.transforms import (
    back_transform_columns,
    ihs_forward,
    ihs_inverse,
    ihs_loglik,
    select_theta,
)


@pytest.mark.parametrize("theta", [1e-3, 0.5, 1.0, 37.0, 200.0])
def test_inverse_undoes_forward(theta):
    x = np.array([-50.0, -1.0, 0.0, 1e-6, 0.3, 7.0, 1234.5])
    np.testing.assert_allclose(ihs_inverse(ihs_forward(x, theta), theta), x, rtol=1e-9, atol=1e-12)


def test_forward_matches_definition():
    assert ihs_forward(2.0, 0.5) == pytest.approx(np.arcsinh(1.0) / 0.5)
    assert ihs_inverse(1.0, 2.0) == pytest.approx(np.sinh(2.0) / 2.0)


@pytest.mark.parametrize("theta", [0.0, -1.0, np.nan])
def test_non_positive_theta_is_rejected(theta):
    with pytest.raises(ValueError):
        ihs_forward([1.0], theta)


def test_loglik_at_floor_is_linear_limit():
    x = np.array([0.0, 0.2, 1.0, 3.0, 9.0])
    linear = -len(x) * np.log(np.sum((x - x.mean()) ** 2))
    assert np.isfinite(ihs_loglik(x, 0.0))
    assert ihs_loglik(x, 0.0) == pytest.approx(linear, rel=1e-9)
    assert ihs_loglik(x, 0.0) == ihs_loglik(x, THETA_FLOOR)


def test_selected_theta_beats_interval_ends():
    x = [0.1, 0.5, 1.0, 5.0, 10.0]
    theta = select_theta(x, bounds=(0, 200))
    assert 0 <= theta <= 200
    best = ihs_loglik(x, theta)
    assert best >= ihs_loglik(x, 0.01)
    assert best >= ihs_loglik(x, 199)


def test_selection_is_deterministic():
    x = np.random.default_rng(5).gamma(1.2, 3.0, size=60)
    assert select_theta(x) == select_theta(x)


@pytest.mark.parametrize("scale", [1.0, 10.0])
def test_selected_theta_is_a_local_maximum(scale):
    rng = np.random.default_rng(12)
    x = np.where(rng.random(80) < 0.3, 0.0, rng.lognormal(0.5, 1.0, size=80)) * scale
    theta = select_theta(x)
    best = ihs_loglik(x, theta)
    eps = max(0.05 * theta, 1e-3)
    for nearby in (max(theta - eps, THETA_FLOOR), min(theta + eps, 200.0)):
        assert ihs_loglik(x, nearby) <= best + 1e-9


def test_missing_values_are_ignored():
    x = pd.Series([0.0, 1.5, None, 4.0, np.nan, 0.3])
    assert select_theta(x) == select_theta([0.0, 1.5, 4.0, 0.3])


@pytest.mark.parametrize("values", [[], [1.0], [np.nan, 2.0, None]])
def test_insufficient_data(values):
    with pytest.raises(InsufficientDataError):
        select_theta(values)


def test_back_transform_columns_only_touches_requested():
    theta = 0.8
    df = pd.DataFrame({"emmean": ihs_forward([1.0, 2.0], theta), "se": [0.1, 0.2]})
    out = back_transform_columns(df, ["emmean", "not_there"], theta)
    np.testing.assert_allclose(out["emmean"], [1.0, 2.0])
    np.testing.assert_allclose(out["se"], df["se"])
    assert df["emmean"].iloc[0] != pytest.approx(1.0)


@pytest.mark.parametrize("values, bounds", [([3.0, 3.0, 3.0], (0, 200)), ([0.0, 0.0, np.nan, 0.0], (0.5, 10.0))])
def test_constant_values_get_lower_bound(values, bounds):
    theta = select_theta(values, bounds=bounds)
    assert theta == max(bounds[0], THETA_FLOOR)
    assert np.isfinite(ihs_forward(values, theta)[0])
