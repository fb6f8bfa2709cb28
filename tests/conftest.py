# tests/conftest.py

from itertools import product

import numpy as np
import pandas as pd
import pytest

from agrotrial.constants import CONTRAST_GENOTYPES

# =========================
# Synthetic Data Generators
# =========================


def generate_trial_data(
    genotypes,
    treatments=("Absent", "Present"),
    environments=("Env1",),
    n_reps: int = 3,
    genotype_effects=None,
    treatment_effects=None,
    rep_sd: float = 1.0,
    noise_sd: float = 0.5,
    base: float = 20.0,
    seed: int = 42,
    response: str = "Yield",
) -> pd.DataFrame:
    """
    Balanced split-plot style data with additive genotype and treatment effects.

    Each (environment, rep) gets its own random block effect.
    """
    rng = np.random.default_rng(seed)
    genotype_effects = genotype_effects or {g: 2.0 * i for i, g in enumerate(genotypes)}
    treatment_effects = treatment_effects or {t: 5.0 * i for i, t in enumerate(treatments)}

    records = []
    for env in environments:
        rep_effects = rng.normal(0, rep_sd, size=n_reps)
        for rep in range(n_reps):
            for g, t in product(genotypes, treatments):
                value = (
                    base
                    + genotype_effects[g]
                    + treatment_effects[t]
                    + rep_effects[rep]
                    + rng.normal(0, noise_sd)
                )
                records.append({
                    "Location": env,
                    "Rep": f"R{rep + 1}",
                    "Treatment": t,
                    "Genotype": g,
                    response: value,
                })
    return pd.DataFrame(records)


def generate_exact_means_data(
    cell_means: dict,
    n_reps: int = 3,
    deviation: float = 0.25,
    rep_shifts=None,
) -> pd.DataFrame:
    """
    Data whose cell means equal ``cell_means`` exactly.

    Within each cell the rep deviations are (-d, 0, +d, ...) scaled by a
    per-cell sign and the rep shifts default to a cosine, so both sum to zero
    and the cell averages carry no noise. ``deviation=0`` gives data with no
    residual noise at all.
    """
    offsets = np.arange(n_reps) - (n_reps - 1) / 2.0
    if rep_shifts is None:
        rep_shift = 0.5 * np.cos(2 * np.pi * np.arange(n_reps) / n_reps)
    else:
        rep_shift = np.asarray(rep_shifts, dtype=float)
    records = []
    for k, ((g, t), mean) in enumerate(sorted(cell_means.items())):
        sign = 1.0 if k % 2 == 0 else -1.0
        for rep in range(n_reps):
            records.append({
                "Location": "Env1",
                "Rep": f"R{rep + 1}",
                "Treatment": t,
                "Genotype": g,
                "Yield": mean + rep_shift[rep] + sign * deviation * offsets[rep] * (1 + k % 3),
            })
    return pd.DataFrame(records)


def generate_full_trial(
    genotypes=None,
    environments=("Env1", "Env2"),
    n_reps: int = 3,
    seed: int = 7,
) -> pd.DataFrame:
    """Trial table with all input columns, zero-inflated PIT/NOPPT and normal Yield."""
    rng = np.random.default_rng(seed)
    genotypes = list(genotypes or CONTRAST_GENOTYPES + ["Hilliard"])
    records = []
    for env_i, env in enumerate(environments):
        rep_effects = rng.normal(0, 1.0, size=n_reps)
        for rep in range(n_reps):
            for g_i, g in enumerate(genotypes):
                for t in ("Absent", "Present"):
                    present = t == "Present"
                    pit_scale = (0.5 + 0.3 * g_i) * (3.0 if present else 1.0)
                    pit = rng.gamma(2.0, pit_scale) if rng.random() > 0.25 else 0.0
                    noppt = rng.gamma(1.5, 4.0 if present else 1.5) if rng.random() > 0.3 else 0.0
                    records.append({
                        "Location": env,
                        "Rep": rep + 1,
                        "Treatment": t,
                        "Genotype": g,
                        "PIT": pit,
                        "NOPPT": noppt,
                        "Yield": 80 + 3 * g_i - (6 if present else 0) + 2 * env_i
                        + rep_effects[rep] + rng.normal(0, 2.0),
                        "TestWeight": 56 + rng.normal(0, 1.0),
                    })
    return pd.DataFrame(records)


@pytest.fixture
def balanced_single_env() -> pd.DataFrame:
    return generate_trial_data(
        genotypes=["G1", "G2", "G3", "G4"],
        n_reps=4,
        genotype_effects={"G1": 0.0, "G2": 5.0, "G3": 10.0, "G4": 15.0},
        treatment_effects={"Absent": 0.0, "Present": 8.0},
        rep_sd=2.0,
        noise_sd=0.5,
        seed=1,
    )


@pytest.fixture
def balanced_multi_env() -> pd.DataFrame:
    df = generate_trial_data(
        genotypes=["G1", "G2", "G3"],
        environments=("Env1", "Env2", "Env3"),
        n_reps=3,
        rep_sd=1.0,
        noise_sd=0.5,
        seed=3,
    )
    df["Environment"] = df["Location"]
    return df


@pytest.fixture
def literal_genotype_env() -> pd.DataFrame:
    return generate_trial_data(
        genotypes=list(CONTRAST_GENOTYPES),
        n_reps=3,
        noise_sd=1.0,
        seed=11,
    )


@pytest.fixture
def full_trial() -> pd.DataFrame:
    return generate_full_trial()
