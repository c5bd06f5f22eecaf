from collections.abc import Callable
from typing import cast

import numpy as np
import pandas as pd

from scvdj.util import DataHandler
from scvdj.util._exceptions import InvalidConfiguration

from ._group_abundance import _doc_groups, _vdj_obs


def _inv_simpson(counts: np.ndarray):
    """Inverse Simpson index :math:`1 / \\sum p_i^2`"""
    return np.sum(counts) ** 2 / np.sum(counts**2)


def _simpson(counts: np.ndarray):
    """Gini-Simpson index :math:`1 - \\sum p_i^2`"""
    freqs = counts / np.sum(counts)
    return 1 - np.sum(freqs**2)


def _shannon(counts: np.ndarray):
    """Shannon entropy with natural logarithm"""
    freqs = counts / np.sum(counts)
    return -np.sum(freqs * np.log(freqs))


def _shannon_entropy(counts: np.ndarray):
    """Normalized shannon entropy according to
    https://math.stackexchange.com/a/945172
    """
    freqs = counts / np.sum(counts)

    if len(freqs) == 1:
        # the formula below is not defined for n==1
        return 0
    else:
        return -np.sum((freqs * np.log(freqs)) / np.log(len(freqs)))


def _dxx(counts: np.ndarray, *, percentage: int):
    """
    D50/DXX according to https://patents.google.com/patent/WO2012097374A1/en

    Parameters
    ----------
    percentage
        Percentage of J
    """
    freqs = counts / np.sum(counts)
    freqs = np.sort(freqs)[::-1]
    prop, i = 0, 0

    while prop < (percentage / 100):
        prop += freqs[i]
        i += 1

    return i / len(freqs) * 100


_METRICS = {
    "inv_simpson": _inv_simpson,
    "simpson": _simpson,
    "shannon": _shannon,
    "normalized_shannon_entropy": _shannon_entropy,
    "D50": lambda counts: _dxx(counts, percentage=50),
}


def _get_metric(method: str | Callable[[np.ndarray], float], **kwargs) -> Callable[[np.ndarray], float]:
    if callable(method):
        return method
    if method == "DXX":
        if "percentage" not in kwargs:
            raise InvalidConfiguration("DXX requires the `percentage` keyword argument, which can range from 0 to 100.")
        return lambda counts: _dxx(counts, percentage=cast(int, kwargs["percentage"]))
    try:
        return _METRICS[method]
    except KeyError:
        raise InvalidConfiguration(
            f"Invalid diversity method: {method}. Valid methods are {', '.join([*_METRICS, 'DXX'])} or a function."
        ) from None


@DataHandler.inject_param_docs(groups=_doc_groups)
def calc_diversity(
    adata: DataHandler.TYPE,
    *,
    clonotype_col: str = "clonotype_id",
    cluster_col: str | None = None,
    method: str | Callable[[np.ndarray], int | float] = "inv_simpson",
    prefix: str = "",
    inplace: bool = True,
    key_added: str | None = None,
    vdj_mod: str = "vdj",
    **kwargs,
) -> pd.Series | None:
    """\
    Computes the clonotype diversity of each group.

    Inverse Simpson index:
        :math:`1 / \\sum_i p_i^2`, where :math:`p_i` is the fraction of cells with clonotype `i`.
        This is the default.

    Simpson index:
        The Gini-Simpson index :math:`1 - \\sum_i p_i^2`.

    Shannon entropy:
        :math:`-\\sum_i p_i \\ln p_i`. `normalized_shannon_entropy` divides the entropy by the
        logarithm of the number of clonotypes (`0` for a single clonotype).

    D50:
        D50 is a measure of the minimum number of distinct clonotypes totalling greater than 50% of total clonotype
        counts in a given group, as a percentage out of the total number of clonotypes.
        Adapted from `<https://patents.google.com/patent/WO2012097374A1/en>`__.

    DXX:
        Similar to D50 where XX indicates the percentage of total clonotype counts threshold.
        Requires to pass the `percentage` keyword argument which can be within 0 and
        100.

    Groups without any cell with a clonotype have a diversity of `NaN`.

    Parameters
    ----------
    {adata}
    {groups}
    method
        One of `inv_simpson`, `simpson`, `shannon`, `normalized_shannon_entropy`, `D50`, `DXX`
        or a function that computes the diversity from a vector of clonotype counts.
    {prefix}
    {inplace}
    {key_added}
        Defaults to `{{prefix}}{{method}}_diversity`.
    {vdj_mod}
    **kwargs
        Additional arguments passed to the metric function.

    Returns
    -------
    Depending on the value of inplace returns a Series with the diversity
    of each group or adds a column to `obs`. Without `cluster_col`, there is a single
    group called `all`.
    """
    metric = _get_metric(method, **kwargs)
    params = DataHandler(adata, vdj_mod)
    obs = _vdj_obs(params, clonotype_col, cluster_col)

    if cluster_col is None:
        groups = ["all"]
        obs = obs.assign(**{"__group__": "all"})
        group_col = "__group__"
    else:
        groups = params.get_obs(cluster_col).reindex(params.adata.obs_names).dropna().unique()
        groups = sorted(groups, key=str)
        group_col = cluster_col
    clono_counts = obs.groupby([group_col, clonotype_col], observed=True).size().reset_index(name="count")

    diversity = {}
    for k in groups:
        tmp_counts = cast(np.ndarray, clono_counts.loc[clono_counts[group_col] == k, "count"].values)
        diversity[k] = metric(tmp_counts) if len(tmp_counts) else np.nan

    method_name = method if isinstance(method, str) else method.__name__
    diversity = pd.Series(diversity, name=f"{method_name}_diversity", dtype=float)

    if inplace:
        key_added = f"{prefix}{method_name}_diversity" if key_added is None else key_added
        has_vdj = pd.Series(params.has_vdj, index=params.adata.obs_names)
        if cluster_col is None:
            values = pd.Series(diversity["all"], index=params.adata.obs_names)
        else:
            values = params.get_obs(cluster_col).reindex(params.adata.obs_names).map(diversity).astype(float)
        params.set_obs(key_added, values.where(has_vdj))
    else:
        return diversity
