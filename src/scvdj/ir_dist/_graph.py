"""Shared nearest neighbor graph from a cell x cell distance matrix"""

import numpy as np
import scipy.sparse
from scipy.sparse import csr_matrix


def knn_membership(dist: np.ndarray, k: int) -> csr_matrix:
    """\
    Binary matrix with the neighborhood of each cell in its row.

    The neighborhood of a cell consists of the cell itself and its `k` nearest other cells.
    Ties are broken by cell order. Cells with a missing (`NaN`) distance are never neighbors,
    so a cell may have less than `k` neighbors.
    """
    n = dist.shape[0]
    rows, cols = [], []
    cell_idx = np.arange(n)
    for i in range(n):
        d = dist[i]
        candidates = np.flatnonzero(~np.isnan(d) & (cell_idx != i))
        nearest = candidates[np.argsort(d[candidates], kind="stable")[:k]]
        rows.extend([i] * (len(nearest) + 1))
        cols.append(i)
        cols.extend(nearest.tolist())
    return csr_matrix((np.ones(len(rows)), (rows, cols)), shape=(n, n))


def snn_graph(dist: np.ndarray, k: int = 10) -> csr_matrix:
    """\
    Build a shared nearest neighbor (SNN) graph.

    Two cells are connected if one is among the `k` nearest neighbors of the other.
    The weight of an edge is the number of cells the neighborhoods of both
    cells have in common (each neighborhood including the cell itself).

    Parameters
    ----------
    dist
        Dense, symmetric cell x cell distance matrix. `NaN` marks incomparable cells.
    k
        Number of neighbors. Clamped to the number of cells - 1.

    Returns
    -------
    Symmetric sparse weight matrix with an empty diagonal.
    """
    n = dist.shape[0]
    k = max(min(k, n - 1), 0)
    membership = knn_membership(dist, k)
    shared = (membership @ membership.T).tocsr()
    adjacency = ((membership + membership.T) > 0).astype(np.float64)
    adjacency = adjacency - scipy.sparse.diags(adjacency.diagonal())
    graph = shared.multiply(adjacency).tocsr()
    graph.eliminate_zeros()
    return graph
