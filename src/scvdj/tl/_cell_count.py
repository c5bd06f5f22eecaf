import numpy as np
import pandas as pd

from scvdj.util import DataHandler, _check_columns, _is_na
from scvdj.util._exceptions import InvalidConfiguration


@DataHandler.inject_param_docs()
def calc_cell_count(
    adata: DataHandler.TYPE,
    cluster_col: str,
    *,
    fill_col: str | None = None,
    group_col: str | None = None,
    vdj_mod: str = "vdj",
) -> pd.DataFrame:
    """\
    Count the cells of each cluster.

    Without `fill_col`, the fraction is the number of cells of a cluster divided by the
    number of cells in the group (or all cells, if `group_col` is not specified). With
    `fill_col`, cells of each cluster are further split by the values of `fill_col`, and the
    fraction refers to all cells of the cluster in the same group. This is the data
    underlying a stacked bar chart with one bar per cluster.

    Cells with a missing value in any of the columns are ignored.

    Parameters
    ----------
    {adata}
    cluster_col
        Column in `obs` with the categories to count cells for, e.g. clonotype clusters.
    fill_col
        Column in `obs` to split the cells of each cluster by, e.g. the isotype.
    group_col
        Column in `obs` with groups (e.g. samples) for which counts are computed separately.
    {vdj_mod}

    Returns
    -------
    :class:`~pandas.DataFrame` with the columns `group_col` (if specified), `cluster_col`,
    `fill_col` (if specified), `n_cells` and `frac`.
    """
    params = DataHandler(adata, vdj_mod)
    count_cols = [c for c in (group_col, cluster_col, fill_col) if c is not None]
    if len(set(count_cols)) != len(count_cols):
        raise InvalidConfiguration("`cluster_col`, `fill_col` and `group_col` need to be different columns.")
    _check_columns(params, count_cols)

    obs = params.get_obs(count_cols).reindex(params.adata.obs_names)
    mask = np.logical_and.reduce([~_is_na(obs[c].values) for c in count_cols])
    obs = obs.loc[mask, :]

    df = obs.groupby(count_cols, observed=True).size().reset_index(name="n_cells")
    # the last column is split up within the others
    total_cols = count_cols[:-1]
    if len(total_cols):
        df["frac"] = df["n_cells"] / df.groupby(total_cols, observed=True)["n_cells"].transform("sum")
    else:
        df["frac"] = df["n_cells"] / df["n_cells"].sum()
    return df
