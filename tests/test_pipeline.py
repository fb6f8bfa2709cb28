# tests/test_pipeline.py

import numpy as np
import pandas as pd
import plotly.graph_objects as go
import pytest

from agrotrial.exceptions import InsufficientDataError, SingularFitError
from agrotrial.pipeline import PipelineConfig, ResultAccumulator, Trait, run_analysis
from agrotrial.transforms import ihs_inverse

from conftest import generate_full_trial


@pytest.fixture(scope="module")
def full_results():
    return run_analysis(generate_full_trial())


def test_thetas_only_for_transformed_traits(full_results):
    assert set(full_results.thetas) == {"PIT", "NOPPT"}
    assert all(theta > 0 for theta in full_results.thetas.values())


def test_single_environment_tables(full_results):
    anova = full_results.anova
    assert set(anova["Trait"]) == {"PIT", "NOPPT", "Yield"}
    assert set(anova["Environment"]) == {"Env1", "Env2"}
    # three effects per trait and environment
    assert len(anova) == 3 * 3 * 2

    emm = full_results.emmeans
    assert len(emm) == 3 * 2 * 7 * 2
    assert {"emmean", "se", "df", "ci_low", "ci_high", "group"} <= set(emm.columns)

    contrasts = full_results.contrasts
    assert len(contrasts) == 3 * 2 * 6
    assert contrasts["contrast"].str.endswith(" Present").all()


def test_back_transform_only_where_configured(full_results):
    emm = full_results.emmeans
    pit = emm[emm["Trait"] == "PIT"]
    expected = ihs_inverse(pit["emmean"].to_numpy(), full_results.thetas["PIT"])
    np.testing.assert_allclose(pit["emmean_response"], expected)

    yld = emm[emm["Trait"] == "Yield"]
    np.testing.assert_allclose(yld["emmean_response"], yld["emmean"])


def test_multi_environment_tables_are_joined(full_results):
    anova = full_results.anova_multi
    assert len(anova) == 7
    for trait in ("PIT", "NOPPT", "Yield"):
        assert f"{trait}_F" in anova.columns

    emm = full_results.emmeans_multi
    assert len(emm) == 14
    assert list(emm.columns[:2]) == ["Genotype", "Treatment"]
    assert "Yield_emmean" in emm.columns

    assert len(full_results.contrasts_multi) == 6
    assert "NOPPT_p_value" in full_results.contrasts_multi.columns

    back = full_results.emmeans_multi_backtransformed
    assert list(back.columns[:2]) == ["Genotype", "Treatment"]
    expected = ihs_inverse(emm["NOPPT_emmean"].to_numpy(), full_results.thetas["NOPPT"])
    np.testing.assert_allclose(back["NOPPT_emmean"], expected)
    np.testing.assert_allclose(back["Yield_ci_high"], emm["Yield_ci_high"])


def test_to_csv_writes_every_table(full_results, tmp_path):
    written = full_results.to_csv(tmp_path)
    names = {p.name for p in written}
    assert "anova_multi.csv" in names
    assert "thetas.csv" in names
    thetas = pd.read_csv(tmp_path / "thetas.csv")
    assert set(thetas["trait"]) == {"PIT", "NOPPT"}


def test_environment_without_data_is_skipped():
    df = generate_full_trial()
    df.loc[df["Location"] == "Env2", "NOPPT"] = np.nan
    results = run_analysis(df, PipelineConfig(traits=("NOPPT",)))

    assert set(results.emmeans["Environment"]) == {"Env1"}
    # one environment left, nothing to model jointly
    assert results.emmeans_multi.empty


def _drop_cell(df):
    mask = (df["Location"] == "Env1") & (df["Genotype"] == "Shirley") & (df["Treatment"] == "Present")
    df = df.copy()
    df.loc[mask, "Yield"] = np.nan
    return df


def test_singular_fit_aborts_with_context():
    df = _drop_cell(generate_full_trial())
    with pytest.raises(SingularFitError) as info:
        run_analysis(df, PipelineConfig(traits=("YIELD",)))
    message = str(info.value)
    assert "trait=Yield" in message
    assert "environment=Env1" in message
    assert "step=fit" in message


def test_singular_fit_can_be_skipped():
    df = _drop_cell(generate_full_trial())
    results = run_analysis(df, PipelineConfig(traits=("YIELD",), on_singular="skip"))

    assert set(results.emmeans["Environment"]) == {"Env2"}
    assert results.anova_multi.empty


def test_transformed_trait_without_data():
    df = generate_full_trial().assign(PIT=np.nan)
    with pytest.raises(InsufficientDataError):
        run_analysis(df, PipelineConfig(traits=("PIT",)))


def test_plots_are_sent_to_sink():
    seen = {}
    config = PipelineConfig(
        traits=("YIELD",),
        multi_environment=False,
        emit_plots=True,
        plot_sink=lambda name, fig: seen.setdefault(name, fig),
    )
    run_analysis(generate_full_trial(), config)

    assert sorted(seen) == ["Yield_Env1", "Yield_Env2"]
    assert all(isinstance(fig, go.Figure) for fig in seen.values())


def test_missing_genotype_reduces_contrasts():
    df = generate_full_trial(environments=("Env1",))
    df = df[df["Genotype"] != "Shirley"]
    results = run_analysis(df, PipelineConfig(traits=("YIELD",)))

    assert len(results.contrasts) == 5
    assert results.anova_multi.empty


def test_unmodeled_trait_is_ignored():
    results = run_analysis(
        generate_full_trial(),
        PipelineConfig(traits=("TEST_WEIGHT",)),
    )
    assert results.anova.empty
    assert results.thetas == {}


@pytest.mark.parametrize(
    "kwargs",
    [
        {"alpha": 1.5},
        {"adjust": "scheffe"},
        {"on_singular": "ignore"},
        {"traits": ()},
        {"theta_bounds": (5.0, 1.0)},
        {"emit_plots": True},
    ],
)
def test_invalid_config(kwargs):
    with pytest.raises(ValueError):
        PipelineConfig(**kwargs)


def test_trait_names_are_accepted():
    config = PipelineConfig(traits=("PIT", Trait.YIELD))
    assert config.traits == (Trait.PIT, Trait.YIELD)


def test_empty_accumulator():
    results = ResultAccumulator().to_results([Trait.YIELD.spec])
    assert all(table.empty for table in results.tables().values())
