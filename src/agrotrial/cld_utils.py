"""
Utilities for Compact Letter Display (CLD) generation from pairwise contrasts.
"""

from __future__ import annotations

from typing import Sequence

import pandas as pd

from .constants import DEFAULT_ALPHA

MAX_EXACT_CLIQUES = 64


def significance_from_contrasts(
    contrasts: pd.DataFrame,
    levels: Sequence[str],
    alpha: float = DEFAULT_ALPHA,
) -> dict[tuple[str, str], bool]:
    """
    Build a symmetric significance map from a pairwise contrast table.

    Parameters
    ----------
    contrasts : pd.DataFrame
        Output of :func:`agrotrial.contrasts.pairwise_contrasts`.
    levels : Sequence[str]
        Level labels to include.
    alpha : float, default=0.05
        Significance threshold; pairs with ``p_value < alpha`` are significant.

    Returns
    -------
    dict[tuple[str, str], bool]
        Significance map: {(level_a, level_b): is_significant, ...}.
        Pairs with a missing p-value are treated as not significant.
    """
    levels = [str(x) for x in levels]
    sig = {(a, b): False for a in levels for b in levels}
    for a, b, p in contrasts[["group_a", "group_b", "p_value"]].itertuples(index=False, name=None):
        a, b = str(a), str(b)
        if a in levels and b in levels and pd.notna(p):
            rej = bool(p < alpha)
            sig[(a, b)] = rej
            sig[(b, a)] = rej
    return sig


def _non_significant_graph(
    sig: dict[tuple[str, str], bool],
    levels: list[str],
) -> dict[str, set[str]]:
    """Adjacency of levels whose pairwise difference is not significant."""
    def _significant(a: str, b: str) -> bool:
        return bool(sig.get((a, b), False) or sig.get((b, a), False))

    return {a: {b for b in levels if b != a and not _significant(a, b)} for a in levels}


def _maximal_cliques(graph: dict[str, set[str]], rank: dict[str, int]) -> list[frozenset[str]]:
    """Bron-Kerbosch with pivoting; cliques are returned in discovery order."""
    cliques: list[frozenset[str]] = []

    def _expand(members: set[str], candidates: set[str], excluded: set[str]) -> None:
        if not candidates and not excluded:
            cliques.append(frozenset(members))
            return
        pivot = max(candidates | excluded, key=lambda v: (len(graph[v] & candidates), -rank[v]))
        for v in sorted(candidates - graph[pivot], key=rank.get):
            _expand(members | {v}, candidates & graph[v], excluded & graph[v])
            candidates = candidates - {v}
            excluded = excluded | {v}

    _expand(set(), set(graph), set())
    return cliques


def _clique_key(clique: frozenset[str], rank: dict[str, int]) -> tuple[int, ...]:
    return tuple(sorted(rank[v] for v in clique))


def _greedy_cover(
    cliques: list[frozenset[str]],
    targets: list[frozenset[str]],
    rank: dict[str, int],
) -> list[int]:
    chosen: list[int] = []
    uncovered = list(targets)
    while uncovered:
        best = min(
            range(len(cliques)),
            key=lambda i: (-sum(t <= cliques[i] for t in uncovered), _clique_key(cliques[i], rank)),
        )
        chosen.append(best)
        uncovered = [t for t in uncovered if not t <= cliques[best]]
    return chosen


def _minimum_cover(
    cliques: list[frozenset[str]],
    targets: list[frozenset[str]],
    rank: dict[str, int],
) -> list[int]:
    """
    Smallest set of cliques containing every target (level or pair).

    Branch and bound: the uncovered target with the fewest covering cliques
    is branched on first, and the greedy cover is the initial bound.
    """
    best = _greedy_cover(cliques, targets, rank)
    if len(cliques) > MAX_EXACT_CLIQUES:
        return best

    covering = {
        t: sorted((i for i, c in enumerate(cliques) if t <= c), key=lambda i: _clique_key(cliques[i], rank))
        for t in targets
    }

    def _search(chosen: list[int], uncovered: list[frozenset[str]]) -> None:
        nonlocal best
        if not uncovered:
            if len(chosen) < len(best):
                best = list(chosen)
            return
        if len(chosen) + 1 >= len(best):
            return
        target = min(uncovered, key=lambda t: (len(covering[t]), sorted(rank[v] for v in t)))
        for i in covering[target]:
            _search(chosen + [i], [t for t in uncovered if not t <= cliques[i]])

    _search([], list(targets))
    return best


def _letter(index: int) -> str:
    alphabet = "abcdefghijklmnopqrstuvwxyz"
    return alphabet[index] if index < len(alphabet) else f"a{index - len(alphabet) + 1}"


def make_cld_from_significance(
    sig: dict[tuple[str, str], bool],
    group_order: Sequence[str],
) -> dict[str, str]:
    """
    Assign compact letters from a significance map.

    Levels are vertices of a graph joined when their difference is not
    significant. Every letter is a maximal clique of that graph, and the
    letters are the fewest cliques that together contain every level and
    every non-significant pair. Two levels therefore share a letter exactly
    when their pair is not significant. Letters are ordered by the positions
    of their members in ``group_order``, so the first level always has 'a'.

    Parameters
    ----------
    sig : dict[tuple[str, str], bool]
        Significance map from :func:`significance_from_contrasts`. A pair
        counts as significant if either orientation is True.
    group_order : Sequence[str]
        Level order used for letter order and tie-breaking.

    Returns
    -------
    dict[str, str]
        Mapping of level -> letters (e.g., {"A": "a", "B": "ab", "C": "b"}).
    """
    levels = [str(x) for x in group_order]
    if not levels:
        return {}
    rank = {g: i for i, g in enumerate(levels)}

    graph = _non_significant_graph(sig, levels)
    cliques = _maximal_cliques(graph, rank)
    targets = [frozenset([g]) for g in levels]
    targets += [frozenset([a, b]) for i, a in enumerate(levels) for b in levels[i + 1:] if b in graph[a]]

    chosen = sorted(
        (cliques[i] for i in _minimum_cover(cliques, targets, rank)),
        key=lambda c: _clique_key(c, rank),
    )
    return {g: "".join(_letter(k) for k, c in enumerate(chosen) if g in c) for g in levels}


def compact_letter_display(
    contrasts: pd.DataFrame,
    levels: Sequence[str],
    alpha: float = DEFAULT_ALPHA,
) -> pd.DataFrame:
    """
    Letter groups for a set of level combinations.

    Two levels share a letter if and only if their pairwise contrast is not
    significant at ``alpha``.

    Returns
    -------
    pd.DataFrame
        Columns: level, group.
    """
    sig = significance_from_contrasts(contrasts, levels, alpha=alpha)
    letters = make_cld_from_significance(sig, levels)
    return pd.DataFrame({"level": list(levels), "group": [letters[str(x)] for x in levels]})
