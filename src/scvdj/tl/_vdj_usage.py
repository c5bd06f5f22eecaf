from collections.abc import Sequence

import pandas as pd

from scvdj.get import _chain_table
from scvdj.util import DataHandler, _check_chains, _check_columns
from scvdj.util._exceptions import InvalidConfiguration

_GENE_COLUMNS = ("v_gene", "d_gene", "j_gene", "c_gene")


@DataHandler.inject_param_docs()
def calc_usage(
    adata: DataHandler.TYPE,
    gene_cols: str | Sequence[str],
    *,
    cluster_col: str | None = None,
    chains: str | Sequence[str] | None = None,
    chain_col: str = "chains",
    vdj_mod: str = "vdj",
    sep: str = ";",
) -> pd.DataFrame:
    """\
    Count the number of cells that use each V(D)J gene.

    A cell uses a gene if at least one of its chains does. If two gene columns are
    given, genes are paired within each chain, e.g. `("v_gene", "j_gene")` counts
    the V-J combinations.

    Parameters
    ----------
    {adata}
    gene_cols
        One or two of `v_gene`, `d_gene`, `j_gene` and `c_gene`.
    cluster_col
        Column in `obs` with group labels. Usage is computed separately for each group.
    {chains}
    {chain_col}
    {vdj_mod}
    {sep}

    Returns
    -------
    :class:`~pandas.DataFrame` with the columns `cluster_col` (if specified), `gene_cols`,
    `freq` (number of cells using the gene) and `pct` (percentage of cells of the group with
    at least one included chain). Missing genes are reported as `"None"`.
    """
    if isinstance(gene_cols, str):
        gene_cols = [gene_cols]
    gene_cols = list(gene_cols)
    if not 1 <= len(gene_cols) <= 2 or len(set(gene_cols)) != len(gene_cols):
        raise InvalidConfiguration("`gene_cols` must be one or two distinct gene columns.")
    for col in gene_cols:
        if col not in _GENE_COLUMNS:
            raise InvalidConfiguration(f"`{col}` is not a gene column. Valid columns are {', '.join(_GENE_COLUMNS)}.")
    chains = _check_chains(chains)
    params = DataHandler(adata, vdj_mod, sep=sep, chain_col=chain_col)
    _check_columns(params, [cluster_col])

    df = _chain_table(params, gene_cols, chains=chains)
    for col in gene_cols:
        df[col] = df[col].fillna("None").astype(str)

    group_cols = []
    if cluster_col is not None:
        groups = params.get_obs(cluster_col).reindex(params.adata.obs_names)
        df[cluster_col] = groups.loc[df["cell_id"]].values
        df = df.loc[df[cluster_col].notnull(), :]
        group_cols = [cluster_col]

    # a cell counts once per gene
    df = df.drop_duplicates(["cell_id", *gene_cols])
    n_cells = df.groupby(group_cols, observed=True)["cell_id"].nunique() if group_cols else df["cell_id"].nunique()

    res = df.groupby(group_cols + gene_cols, observed=True).size().reset_index(name="freq")
    if group_cols:
        res["pct"] = res["freq"] / res[cluster_col].map(n_cells).astype(float) * 100
    else:
        res["pct"] = res["freq"] / n_cells * 100
    return res.sort_values(
        group_cols + ["freq", *gene_cols], ascending=[True] * len(group_cols) + [False] + [True] * len(gene_cols)
    ).reset_index(drop=True)
