import random

import igraph as ig
import numpy as np
from scanpy import logging
from scipy import sparse
from scipy.sparse import csr_matrix, spmatrix

from ._louvain import louvain, modularity, renumber_by_size

__all__ = [
    "connected_components",
    "igraph_from_sparse_matrix",
    "leiden",
    "louvain",
    "modularity",
    "renumber_by_size",
]


def igraph_from_sparse_matrix(
    matrix: spmatrix,
    *,
    simplify: bool = True,
) -> ig.Graph:
    """
    Get an igraph object from a weighted adjacency matrix.

    Parameters
    ----------
    matrix
        A sparse matrix that represents the connectivities of the graph.
        Zero-entries mean "no edge between the two nodes".
    simplify
        Make an undirected graph and remove circular edges (i.e. edges from
        a node to itself).

    Returns
    -------
    igraph object with the edge attribute `weight`.
    """
    return _get_igraph_from_adjacency(sparse.csr_matrix(matrix), simplify=simplify)


def _get_igraph_from_adjacency(adj: csr_matrix, simplify=True):
    """Get an undirected igraph graph from adjacency matrix.
    Better than Graph.Adjacency for sparse matrices.

    Parameters
    ----------
    adj
        sparse, weighted, symmetrical adjacency matrix.
    """
    adj = adj.copy()
    adj.eliminate_zeros()
    coo = adj.tocoo()
    sources, targets, weights = coo.row, coo.col, coo.data

    g = ig.Graph(directed=not simplify)
    g.add_vertices(adj.shape[0])  # this adds adjacency.shape[0] vertices
    g.add_edges(list(zip(sources.tolist(), targets.tolist(), strict=True)))

    g.es["weight"] = weights.tolist()

    if g.vcount() != adj.shape[0]:
        logging.warning(
            f"The constructed graph has only {g.vcount()} nodes. Your adjacency matrix contained redundant nodes."
        )  # type: ignore

    if simplify:
        # since we start from a symmetrical matrix, and the graph is undirected,
        # it is fine to take either of the two edges when simplifying.
        g.simplify(combine_edges="first")

    return g


def leiden(
    adjacency: csr_matrix,
    resolution: float = 1.0,
    *,
    n_iterations: int = 2,
    random_state: int = 0,
) -> np.ndarray:
    """\
    Partition a graph with the Leiden algorithm of Traag, van Eck & Waltman, as implemented in igraph.

    Uses the modularity objective with the given resolution. The result is numbered by
    decreasing community size.
    """
    g = _get_igraph_from_adjacency(csr_matrix(adjacency))
    # igraph uses python's random number generator
    random.seed(random_state)
    part = g.community_leiden(
        objective_function="modularity",
        weights="weight",
        resolution=resolution,
        n_iterations=n_iterations,
    )
    return renumber_by_size(np.asarray(part.membership, dtype=int))


def connected_components(adjacency: csr_matrix) -> np.ndarray:
    """Label each node with its connected component, numbered by decreasing component size."""
    g = _get_igraph_from_adjacency(csr_matrix(adjacency))
    part = g.connected_components(mode="weak")
    return renumber_by_size(np.asarray(part.membership, dtype=int))
