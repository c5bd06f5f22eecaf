import pandas as pd

from scvdj.util import DataHandler, _check_columns, _is_na

_doc_groups = """\
clonotype_col
    Column in `obs` with the clonotype of each cell. Cells with a missing value are ignored.
cluster_col
    Column in `obs` with group labels (e.g. samples or clusters). Statistics are computed
    separately for each group. If `None`, all cells form a single group.
"""


def _vdj_obs(params: DataHandler, clonotype_col: str, cluster_col: str | None) -> pd.DataFrame:
    """Get the clonotype (and group) of all cells with a clonotype, aligned to the V(D)J modality."""
    _check_columns(params, [clonotype_col, cluster_col])
    cols = [clonotype_col] if cluster_col is None else [cluster_col, clonotype_col]
    obs = params.get_obs(cols).reindex(params.adata.obs_names)
    mask = ~_is_na(obs[clonotype_col])
    if cluster_col is not None:
        mask &= ~_is_na(obs[cluster_col])
    obs = obs.loc[mask, :].copy()
    obs[clonotype_col] = obs[clonotype_col].astype(str)
    return obs


@DataHandler.inject_param_docs(groups=_doc_groups)
def calc_abundance(
    adata: DataHandler.TYPE,
    *,
    clonotype_col: str = "clonotype_id",
    cluster_col: str | None = None,
    prefix: str = "",
    inplace: bool = True,
    vdj_mod: str = "vdj",
) -> pd.DataFrame | None:
    """\
    Calculate the abundance of each clonotype.

    The frequency of a clonotype is the number of cells in a group with this clonotype,
    the fraction is the frequency divided by the number of cells of the group that have a
    clonotype. Clonotypes are ranked by frequency within each group, ties are ranked by
    clonotype id.

    Parameters
    ----------
    {adata}
    {groups}
    {prefix}
    inplace
        If `True`, store the frequency of each cell's clonotype in `obs["{{prefix}}clone_freq"]`
        and the fraction in `obs["{{prefix}}clone_frac"]`. Otherwise return a data frame.
    {vdj_mod}

    Returns
    -------
    Depending on `inplace`, nothing or a :class:`~pandas.DataFrame` with the columns
    `cluster_col` (if specified), `clonotype_col`, `freq`, `pct` (percentage of the group)
    and `rank`.
    """
    params = DataHandler(adata, vdj_mod)
    obs = _vdj_obs(params, clonotype_col, cluster_col)
    group_cols = [] if cluster_col is None else [cluster_col]

    if inplace:
        freq = obs.groupby(group_cols + [clonotype_col], observed=True)[clonotype_col].transform("count")
        if cluster_col is None:
            group_size = len(obs)
        else:
            group_size = obs.groupby(cluster_col, observed=True)[clonotype_col].transform("count")
        params.set_obs(f"{prefix}clone_freq", freq.reindex(params.adata.obs_names))
        params.set_obs(f"{prefix}clone_frac", (freq / group_size).reindex(params.adata.obs_names))
        return

    df = obs.groupby(group_cols + [clonotype_col], observed=True).size().reset_index(name="freq")
    if cluster_col is None:
        df["pct"] = df["freq"] / df["freq"].sum() * 100
    else:
        df["pct"] = df["freq"] / df.groupby(cluster_col, observed=True)["freq"].transform("sum") * 100
    df = df.sort_values(
        group_cols + ["freq", clonotype_col], ascending=[True] * len(group_cols) + [False, True]
    ).reset_index(drop=True)
    if cluster_col is None:
        df["rank"] = range(1, len(df) + 1)
    else:
        df["rank"] = df.groupby(cluster_col, observed=True).cumcount() + 1
    return df
