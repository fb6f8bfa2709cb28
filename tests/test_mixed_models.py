# tests/test_mixed_models.py

import numpy as np
import pandas as pd
import pytest

from agrotrial.anova import mixed_anova
from agrotrial.exceptions import NoObservationsError, SingularFitError
from agrotrial.mixed_models import MULTI_ENVIRONMENT, SINGLE_ENVIRONMENT, _f_denominator_df, fit_mixed_model

from conftest import generate_trial_data


def test_single_environment_fit(balanced_single_env):
    fitted = fit_mixed_model(balanced_single_env, "Yield", SINGLE_ENVIRONMENT)

    assert fitted.converged
    assert len(fitted.beta) == 1 + 3 + 1 + 3
    assert fitted.var_resid > 0
    assert fitted.var_group >= 0
    assert set(fitted.variance_components) == {"Rep", "Residual"}
    assert fitted.cov_beta.shape == (8, 8)
    assert len(fitted.fitted_values) == len(balanced_single_env)


def test_anova_separates_real_and_null_effects(balanced_single_env):
    fitted = fit_mixed_model(balanced_single_env, "Yield", SINGLE_ENVIRONMENT)
    table = mixed_anova(fitted).set_index("effect")

    assert list(table.index) == ["Genotype", "Treatment", "Genotype:Treatment"]
    assert table.loc["Genotype", "F"] > 100
    assert table.loc["Treatment", "F"] > 100
    assert table.loc["Genotype:Treatment", "F"] < 10
    assert table.loc["Genotype", "p_value"] < 1e-6
    assert list(table["num_df"]) == [3, 1, 3]


def test_balanced_denominator_df_is_within_rep_error_df(balanced_single_env):
    # 32 obs - 8 fixed columns - 3 extra rep levels
    fitted = fit_mixed_model(balanced_single_env, "Yield", SINGLE_ENVIRONMENT)
    table = mixed_anova(fitted)
    np.testing.assert_allclose(table["den_df"], 21.0, rtol=1e-6)


def test_multi_environment_effects_follow_formula_order(balanced_multi_env):
    fitted = fit_mixed_model(balanced_multi_env, "Yield", MULTI_ENVIRONMENT)
    table = mixed_anova(fitted)

    assert list(table["effect"]) == [
        "Genotype",
        "Treatment",
        "Environment",
        "Genotype:Treatment",
        "Genotype:Environment",
        "Treatment:Environment",
        "Genotype:Treatment:Environment",
    ]
    assert len(np.unique(MULTI_ENVIRONMENT.group_key(fitted.data))) == 9


def test_missing_cell_is_singular(balanced_single_env):
    df = balanced_single_env
    df = df[~((df["Genotype"] == "G2") & (df["Treatment"] == "Present"))]
    with pytest.raises(SingularFitError, match="Rank-deficient"):
        fit_mixed_model(df, "Yield", SINGLE_ENVIRONMENT)


def test_single_rep_is_singular(balanced_single_env):
    df = balanced_single_env[balanced_single_env["Rep"] == "R1"]
    with pytest.raises(SingularFitError):
        fit_mixed_model(df, "Yield", SINGLE_ENVIRONMENT)


def test_single_level_factor_is_singular(balanced_single_env):
    df = balanced_single_env[balanced_single_env["Treatment"] == "Absent"]
    with pytest.raises(SingularFitError, match="single level"):
        fit_mixed_model(df, "Yield", SINGLE_ENVIRONMENT)


def test_all_missing_response(balanced_single_env):
    df = balanced_single_env.assign(Yield=np.nan)
    with pytest.raises(NoObservationsError):
        fit_mixed_model(df, "Yield", SINGLE_ENVIRONMENT)


def test_singular_error_context():
    err = SingularFitError("boom").with_context(trait="PIT", environment="Env1", step="fit")
    assert "trait=PIT" in str(err)
    assert "environment=Env1" in str(err)
    assert "step=fit" in str(err)
    assert err.reason == "boom"
    assert isinstance(err, ValueError)


def test_noise_free_additive_anova():
    df = generate_trial_data(
        genotypes=["G1", "G2", "G3"],
        n_reps=3,
        genotype_effects={"G1": 0.0, "G2": 4.0, "G3": 9.0},
        treatment_effects={"Absent": 0.0, "Present": 6.0},
        rep_sd=1.5,
        noise_sd=0.0,
        seed=4,
    )
    fitted = fit_mixed_model(df, "Yield", SINGLE_ENVIRONMENT)
    table = mixed_anova(fitted).set_index("effect")

    assert fitted.exact_fit
    assert fitted.var_group > 0
    assert table.loc["Genotype", "F"] > 100
    assert table.loc["Treatment", "F"] > 100
    assert table.loc["Genotype:Treatment", "F"] < 1
    cell_means = df.groupby(["Genotype", "Treatment"])["Yield"].mean().to_numpy()
    fitted_cells = pd.Series(fitted.fitted_values).groupby(
        [fitted.data["Genotype"], fitted.data["Treatment"]]
    ).mean().to_numpy()
    np.testing.assert_allclose(fitted_cells, cell_means, atol=1e-8)


def test_fixed_effects_match_statsmodels(balanced_single_env):
    fitted = fit_mixed_model(balanced_single_env, "Yield", SINGLE_ENVIRONMENT)
    assert not fitted.exact_fit
    np.testing.assert_allclose(fitted.beta, np.asarray(fitted.result.fe_params), rtol=1e-5, atol=1e-6)


@pytest.mark.parametrize(
    "nus, expected",
    [
        ([np.inf, np.inf], np.inf),
        ([np.inf], np.inf),
        ([12.0, 12.0, 12.0], 12.0),
        ([1.5, 30.0], 2.0),
    ],
)
def test_f_denominator_df(nus, expected):
    assert _f_denominator_df(np.array(nus)) == pytest.approx(expected)


def test_f_denominator_df_with_one_infinite_direction():
    ddf = _f_denominator_df(np.array([10.0, np.inf]))
    assert np.isfinite(ddf)
    assert ddf > 10.0
