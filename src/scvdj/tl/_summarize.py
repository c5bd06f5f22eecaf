from collections.abc import Callable, Sequence
from typing import Any

import numpy as np
import pandas as pd

from scvdj.get import _chain_table
from scvdj.io._datastructures import ChainRecord
from scvdj.util import DataHandler, _check_chains, _check_columns, _join_vdj
from scvdj.util._exceptions import InvalidConfiguration

_NUMERIC_FNS = {
    "mean": np.mean,
    "median": np.median,
    "sum": np.sum,
}

_ANY_FNS = {
    "min": min,
    "max": max,
    "count": len,
}

_doc_fn = """\
fn
    Function used to combine the values of multiple chains. One of `mean`, `median`,
    `sum` (numeric columns only), `min`, `max`, `count` (number of non-missing values),
    `unique` (unique values joined with `sep`) or a function that receives a list of
    non-missing values. Missing values are ignored.
"""


def _get_fn(fn: str | Callable[[list], Any], columns: Sequence[str], sep: str) -> tuple[str, Callable[[list], Any]]:
    """Resolve the summary function. Returns the name of the function and a function that handles empty inputs."""
    if callable(fn):
        name, func = fn.__name__, fn
    elif fn in _NUMERIC_FNS:
        for col in columns:
            if ChainRecord.COLUMN_TYPES[col] is not int:
                raise InvalidConfiguration(f"`{fn}` can only be applied to numeric columns, not to `{col}`.")
        name, func = fn, _NUMERIC_FNS[fn]
    elif fn in _ANY_FNS:
        name, func = fn, _ANY_FNS[fn]
    elif fn == "unique":
        name, func = fn, lambda values: _join_vdj(dict.fromkeys(values), sep)
    else:
        raise InvalidConfiguration(
            f"Invalid summary function: {fn}. Valid functions are {', '.join([*_NUMERIC_FNS, *_ANY_FNS, 'unique'])}."
        )

    def summarize(values: pd.Series):
        values = [v for v in values if v is not None and not pd.isnull(v)]
        if not len(values):
            return 0 if name == "count" else None
        return func(values)

    return name, summarize


def _check_data_cols(params: DataHandler, data_cols: str | Sequence[str]) -> list[str]:
    if isinstance(data_cols, str):
        data_cols = [data_cols]
    data_cols = list(data_cols)
    if not len(data_cols):
        raise InvalidConfiguration("No columns specified.")
    for col in data_cols:
        if col not in params.chain_columns:
            raise InvalidConfiguration(f"`{col}` is not a per-chain column in `obs`.")
    return data_cols


@DataHandler.inject_param_docs(fn=_doc_fn)
def summarize_vdj(
    adata: DataHandler.TYPE,
    data_cols: str | Sequence[str],
    *,
    fn: str | Callable[[list], Any] = "mean",
    chains: str | Sequence[str] | None = None,
    chain_col: str = "chains",
    prefix: str = "",
    inplace: bool = True,
    vdj_mod: str = "vdj",
    sep: str = ";",
) -> pd.DataFrame | None:
    """\
    Summarize per-chain values into a single value per cell.

    For example, `summarize_vdj(adata, "umis", fn="sum")` computes the total number
    of UMIs of all chains of each cell.

    Parameters
    ----------
    {adata}
    data_cols
        One or multiple per-chain columns.
    {fn}
    {chains}
    {chain_col}
    {prefix}
    inplace
        If `True`, store the results in `obs["{{prefix}}{{fn}}_{{column}}"]`. Otherwise
        return them.
    {vdj_mod}
    {sep}

    Returns
    -------
    Depending on `inplace`, nothing or a :class:`~pandas.DataFrame` aligned to the cells
    of the V(D)J modality. Cells without V(D)J data have missing values.
    """
    chains = _check_chains(chains)
    params = DataHandler(adata, vdj_mod, sep=sep, chain_col=chain_col)
    data_cols = _check_data_cols(params, data_cols)
    fn_name, summarize = _get_fn(fn, data_cols, sep)

    df = _chain_table(params, data_cols, chains=chains)
    has_vdj = pd.Series(params.has_vdj, index=params.adata.obs_names)
    res = {}
    for col in data_cols:
        values = df.groupby("cell_id", sort=False)[col].agg(summarize).reindex(params.adata.obs_names)
        if fn_name == "count":
            values = values.where(~has_vdj | values.notnull(), 0)
        res[f"{prefix}{fn_name}_{col}"] = values.where(has_vdj)
    res = pd.DataFrame(res, index=params.adata.obs_names)

    if inplace:
        for key, values in res.items():
            params.set_obs(key, values)
    else:
        return res


@DataHandler.inject_param_docs(fn=_doc_fn)
def summarize_chains(
    adata: DataHandler.TYPE,
    data_cols: str | Sequence[str],
    *,
    fn: str | Callable[[list], Any] = "mean",
    chain_col: str | None = None,
    include_cols: str | Sequence[str] | None = None,
    chains: str | Sequence[str] | None = None,
    vdj_mod: str = "vdj",
    sep: str = ";",
) -> pd.DataFrame:
    """\
    Summarize per-chain values for each cell in long format.

    Parameters
    ----------
    {adata}
    data_cols
        One or multiple per-chain columns.
    {fn}
    chain_col
        If specified, values are summarized separately for each chain type of a cell,
        using this per-chain column (usually `chains`).
    include_cols
        Further columns of `obs` to include in the result.
    {chains}
    {vdj_mod}
    {sep}

    Returns
    -------
    :class:`~pandas.DataFrame` with one row per cell (and chain type, if `chain_col` is specified)
    and the columns `cell_id`, `chain_col`, `include_cols` and `data_cols`. Cells without V(D)J
    data do not appear.
    """
    chains = _check_chains(chains)
    params = DataHandler(adata, vdj_mod, sep=sep, chain_col=chain_col if chain_col is not None else "chains")
    data_cols = _check_data_cols(params, data_cols)
    if include_cols is None:
        include_cols = []
    elif isinstance(include_cols, str):
        include_cols = [include_cols]
    _check_columns(params, include_cols)
    fn_name, summarize = _get_fn(fn, data_cols, sep)

    df = _chain_table(params, data_cols, chains=chains)
    group_cols = ["cell_id"] if chain_col is None else ["cell_id", chain_col]
    res = df.groupby(group_cols, sort=False)[data_cols].agg(summarize).reset_index()

    if len(include_cols):
        obs = params.get_obs(list(include_cols)).reindex(params.adata.obs_names)
        for col in include_cols:
            res[col] = obs[col].loc[res["cell_id"]].values
    return res.loc[:, [*group_cols, *include_cols, *data_cols]]
