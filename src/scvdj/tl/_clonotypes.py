import warnings
from collections.abc import Sequence
from typing import Literal

import numpy as np
import pandas as pd
import scipy.sparse
from scanpy import logging
from scipy.sparse import csr_matrix

from scvdj.ir_dist import MetricType, _canonical_keys, _dist_mat, _get_distance_calculator, snn_graph
from scvdj.util import DataHandler, _check_chains
from scvdj.util._exceptions import EmptyGraph, InvalidConfiguration
from scvdj.util.graph import connected_components, leiden, louvain

_doc_clustering = """\
Cells are clustered in four steps:

 1. For each cell, the sequences (`data_col`) of all chains of the included types
    are combined into a canonical key (see :func:`~scvdj.ir_dist.canonical_keys`).
    Cells without any such chain are excluded and receive a missing label.
 2. The Levenshtein distance is computed between all pairs of keys. Cells without
    a common chain type are incomparable.
 3. A shared nearest neighbor (SNN) graph connects each cell to its `k` nearest cells.
    Edges are weighted by the number of neighbors both cells have in common.
 4. The graph is partitioned by optimizing modularity. Clusters are labelled `0`, `1`, ...
    by decreasing size.
"""


def _partition(graph: csr_matrix, method: str, resolution: float, n_iterations: int, random_state: int) -> np.ndarray:
    if method == "louvain":
        return louvain(graph, resolution=resolution)
    elif method == "leiden":
        return leiden(graph, resolution, n_iterations=n_iterations, random_state=random_state)
    else:
        return connected_components(graph)


@DataHandler.inject_param_docs(clustering=_doc_clustering)
def cluster_vdj(
    adata: DataHandler.TYPE,
    *,
    chains: str | Sequence[str] | None = None,
    data_col: str = "cdr3",
    chain_col: str = "chains",
    k: int = 10,
    resolution: float = 1.0,
    method: Literal["louvain", "leiden", "connected"] = "louvain",
    metric: MetricType = "levenshtein",
    n_iterations: int = 2,
    random_state: int = 0,
    prefix: str = "",
    inplace: bool = True,
    n_jobs: int = -1,
    vdj_mod: str = "vdj",
    sep: str = ";",
) -> tuple[pd.Series, csr_matrix] | None:
    """\
    Cluster cells based on the similarity of their receptor sequences.

    {clustering}

    Parameters
    ----------
    {adata}
    {chains}
    {data_col}
    {chain_col}
    k
        Number of nearest neighbors used to build the SNN graph. If there are less
        than `k + 1` cells to cluster, all other cells are neighbors.
    resolution
        Resolution of the modularity optimization. Values > 1 lead to more, smaller
        clusters, values < 1 to fewer, larger clusters. Must be positive.
    method
        How to partition the SNN graph:

          * `louvain` -- a deterministic implementation of the Louvain algorithm. Nodes
            are visited in cell order and ties are broken by the lowest community index.
          * `leiden` -- the Leiden algorithm as implemented in igraph.
          * `connected` -- connected components of the graph. Ignores `resolution`.
    metric
        Distance metric, see :func:`~scvdj.pp.vdj_dist`.
    n_iterations
        `n_iterations` parameter for the leiden algorithm.
    random_state
        Random seed for the leiden algorithm.
    {prefix}
    inplace
        If `True`, adds the results to anndata, otherwise returns them.
    n_jobs
        Number of CPUs used for the distance calculation.
    {vdj_mod}
    {sep}

    Returns
    -------
    Depending on the value of `inplace`, either returns nothing or a tuple with

      * a :class:`~pandas.Series` with the cluster label of each cell of the V(D)J modality
      * the SNN graph as sparse matrix aligned to the cells of the V(D)J modality

    If `inplace` is `True`, the labels are stored in `obs["{{prefix}}clonotype_cluster"]`, the graph
    in `obsp["{{prefix}}clonotype_snn"]` and the parameters in `uns["{{prefix}}clonotype_cluster"]`.
    """
    chains = _check_chains(chains)
    if not resolution > 0:
        raise InvalidConfiguration(f"`resolution` must be positive, got {resolution}.")
    if k < 1:
        raise InvalidConfiguration(f"`k` must be at least 1, got {k}.")
    if method not in ("louvain", "leiden", "connected"):
        raise InvalidConfiguration(f"Invalid clustering method: {method}.")
    _get_distance_calculator(metric, n_jobs=n_jobs)
    params = DataHandler(adata, vdj_mod, sep=sep, chain_col=chain_col)
    keys = _canonical_keys(params, chains, data_col, chain_col)

    n_obs = params.adata.n_obs
    labels = pd.Series(None, index=params.adata.obs_names, dtype=object)
    graph = csr_matrix((n_obs, n_obs), dtype=np.float64)
    included = keys["key"].notnull().values

    if not np.any(included):
        msg = "No cell has a sequence of the selected chain types. All cluster labels are missing."
        warnings.warn(msg, EmptyGraph, stacklevel=2)
        logging.warning(msg)  # type: ignore
    else:
        start = logging.info(f"Clustering {np.sum(included)} cells")  # type: ignore
        dist = _dist_mat(keys, metric=metric, n_jobs=n_jobs)
        logging.info("Building shared nearest neighbor graph")  # type: ignore
        sub_graph = snn_graph(dist.values, k=k)
        logging.info(f"Partitioning graph with {method}")  # type: ignore
        membership = _partition(sub_graph, method, resolution, n_iterations, random_state)
        labels.loc[dist.index] = membership.astype(str)

        # embed the graph of the included cells into a cell x cell matrix
        idx = np.flatnonzero(included)
        embed = scipy.sparse.csr_matrix(
            (np.ones(len(idx)), (idx, np.arange(len(idx)))), shape=(n_obs, len(idx))
        )
        graph = (embed @ sub_graph @ embed.T).tocsr()
        logging.hint(f"Found {len(np.unique(membership))} clusters.", time=start)  # type: ignore

    categories = sorted(labels.dropna().unique(), key=int)
    labels = pd.Series(pd.Categorical(labels, categories=categories), index=labels.index)

    if inplace:
        params.set_obs(f"{prefix}clonotype_cluster", labels)
        params.adata.obsp[f"{prefix}clonotype_snn"] = graph
        params.adata.uns[f"{prefix}clonotype_cluster"] = {
            "chains": "all" if chains is None else chains,
            "data_col": data_col,
            "chain_col": chain_col,
            "k": k,
            "resolution": resolution,
            "method": method,
            "metric": str(metric),
        }
    else:
        return labels, graph
