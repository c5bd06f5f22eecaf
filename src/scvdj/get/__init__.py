from collections.abc import Sequence

import awkward as ak
import igraph as ig
import numpy as np
import pandas as pd
from scipy.sparse import csr_matrix

from scvdj.io._datastructures import ChainRecord
from scvdj.util import DataHandler, _check_chains
from scvdj.util._exceptions import InvalidConfiguration
from scvdj.util.graph import igraph_from_sparse_matrix

__all__ = ["chain_table", "chains", "clonotype_graph", "vdj"]


@DataHandler.inject_param_docs()
def vdj(
    adata: DataHandler.TYPE,
    column: str,
    *,
    vdj_mod: str = "vdj",
    sep: str = ";",
) -> ak.Array:
    """\
    Retrieve the parsed values of a per-chain column.

    Parameters
    ----------
    {adata}
    column
        A per-chain column, e.g. `cdr3` or `v_gene`.
    {vdj_mod}
    {sep}

    Returns
    -------
    A ragged :term:`awkward array` with one list per cell of the V(D)J modality and
    one element per chain. Lists of cells without V(D)J data are empty.
    """
    params = DataHandler(adata, vdj_mod, sep=sep)
    if column not in params.chain_columns:
        raise InvalidConfiguration(f"`{column}` is not a per-chain column in `obs`.")
    return params.chain_values(column)


@DataHandler.inject_param_docs()
def chains(
    adata: DataHandler.TYPE,
    cell_id: str,
    *,
    vdj_mod: str = "vdj",
    sep: str = ";",
) -> list[ChainRecord]:
    """\
    Retrieve the chains of a single cell.

    Parameters
    ----------
    {adata}
    cell_id
        The cell id as in `obs_names`.
    {vdj_mod}
    {sep}

    Returns
    -------
    List of :class:`~scvdj.io.ChainRecord` objects in detection order. Empty for cells
    without V(D)J data.
    """
    params = DataHandler(adata, vdj_mod, sep=sep)
    return params.get_chains(cell_id)


@DataHandler.inject_param_docs()
def chain_table(
    adata: DataHandler.TYPE,
    columns: str | Sequence[str],
    *,
    chains: str | Sequence[str] | None = None,
    chain_col: str = "chains",
    vdj_mod: str = "vdj",
    sep: str = ";",
) -> pd.DataFrame:
    """\
    Retrieve per-chain columns in long format with one row per chain.

    Parameters
    ----------
    {adata}
    columns
        One or multiple per-chain columns.
    {chains}
    {chain_col}
    {vdj_mod}
    {sep}

    Returns
    -------
    :class:`~pandas.DataFrame` with the columns `cell_id`, `chain_idx` (position of the chain
    within the cell), `chain_col` and the requested columns. Cells without V(D)J data
    do not appear.
    """
    chains = _check_chains(chains)
    params = DataHandler(adata, vdj_mod, sep=sep, chain_col=chain_col)
    return _chain_table(params, columns, chains=chains)


def _chain_table(
    params: DataHandler, columns: str | Sequence[str], *, chains: Sequence[str] | None = None
) -> pd.DataFrame:
    if isinstance(columns, str):
        columns = [columns]
    columns = list(dict.fromkeys([params.chain_col, *columns]))
    for col in columns:
        if col not in params.chain_columns:
            raise InvalidConfiguration(f"`{col}` is not a per-chain column in `obs`.")

    n_chains = params.n_chains
    df = pd.DataFrame(
        {
            "cell_id": np.repeat(params.adata.obs_names.values, n_chains),
            "chain_idx": np.concatenate([np.arange(n) for n in n_chains]) if len(n_chains) else np.array([], dtype=int),
        }
    )
    for col in columns:
        df[col] = pd.Series(ak.to_list(ak.flatten(params.chain_values(col))), dtype=object)
    if chains is not None:
        df = df.loc[df[params.chain_col].isin(chains), :].reset_index(drop=True)
    return df


@DataHandler.inject_param_docs()
def clonotype_graph(
    adata: DataHandler.TYPE,
    *,
    prefix: str = "",
    as_igraph: bool = True,
    vdj_mod: str = "vdj",
) -> ig.Graph | csr_matrix:
    """\
    Retrieve the shared nearest neighbor graph computed by :func:`scvdj.tl.cluster_vdj`.

    The graph is restricted to cells with a cluster label, e.g. for computing a
    2D embedding of the clonotype network.

    Parameters
    ----------
    {adata}
    {prefix}
    as_igraph
        If `True`, return an :class:`igraph.Graph` with the edge attribute `weight` and the
        vertex attributes `cell_id` and `cluster`. Otherwise return the sparse weight matrix.
    {vdj_mod}

    Returns
    -------
    The graph. Vertices/rows are in the order of the cells of the V(D)J modality.
    """
    params = DataHandler(adata, vdj_mod, validate=False)
    try:
        graph = params.adata.obsp[f"{prefix}clonotype_snn"]
        labels = params.adata.obs[f"{prefix}clonotype_cluster"]
    except KeyError:
        raise InvalidConfiguration(
            f"No clonotype graph found for prefix `{prefix}`. Did you run `tl.cluster_vdj`?"
        ) from None

    mask = labels.notnull().values
    graph = csr_matrix(graph)[mask, :][:, mask]
    if not as_igraph:
        return graph

    g = igraph_from_sparse_matrix(graph)
    g.vs["cell_id"] = params.adata.obs_names[mask].tolist()
    g.vs["cluster"] = labels[mask].astype(str).tolist()
    return g
