"""Deterministic Louvain community detection on a weighted, undirected graph"""

import numpy as np
import scipy.sparse
from scipy.sparse import csr_matrix

#: Minimal modularity gain that counts as an improvement
_EPS = 1e-10


def _renumber_by_appearance(labels: np.ndarray) -> np.ndarray:
    """Relabel communities with 0, 1, ... in the order of their first member"""
    _, first_idx, inverse = np.unique(labels, return_index=True, return_inverse=True)
    mapping = np.empty(len(first_idx), dtype=int)
    mapping[np.argsort(first_idx, kind="stable")] = np.arange(len(first_idx))
    return mapping[inverse.ravel()]


def renumber_by_size(labels: np.ndarray) -> np.ndarray:
    """\
    Relabel communities with 0, 1, ... by decreasing size.

    Communities of equal size are ordered by their first member.
    """
    labels = _renumber_by_appearance(labels)
    sizes = np.bincount(labels)
    # after renumbering by appearance, the label is the rank of the first member
    order = np.lexsort((np.arange(len(sizes)), -sizes))
    mapping = np.empty(len(sizes), dtype=int)
    mapping[order] = np.arange(len(sizes))
    return mapping[labels]


def _local_move(adj: csr_matrix, resolution: float, m2: float) -> np.ndarray:
    """\
    Move nodes between communities until no move improves modularity.

    Nodes are visited in index order. A node joins the neighboring community with the
    largest gain, if that gain is strictly larger than the gain of staying. Among
    communities with equal gain, the one with the lowest index wins.
    """
    n = adj.shape[0]
    communities = np.arange(n)
    degree = np.asarray(adj.sum(axis=1)).ravel()
    total = degree.copy()

    moved = True
    while moved:
        moved = False
        for i in range(n):
            start, end = adj.indptr[i], adj.indptr[i + 1]
            current = communities[i]
            links: dict[int, float] = {}
            for j, w in zip(adj.indices[start:end], adj.data[start:end], strict=True):
                if j != i:
                    links[communities[j]] = links.get(communities[j], 0.0) + w

            total[current] -= degree[i]
            best, best_gain = current, links.get(current, 0.0) - resolution * degree[i] * total[current] / m2
            for c in sorted(links):
                gain = links[c] - resolution * degree[i] * total[c] / m2
                if gain > best_gain + _EPS:
                    best, best_gain = c, gain
            total[best] += degree[i]

            if best != current:
                communities[i] = best
                moved = True

    return communities


def _aggregate(adj: csr_matrix, communities: np.ndarray) -> csr_matrix:
    """Collapse each community into a single node. Edge weights are summed."""
    n_communities = communities.max() + 1
    membership = csr_matrix(
        (np.ones(len(communities)), (np.arange(len(communities)), communities)),
        shape=(len(communities), n_communities),
    )
    return (membership.T @ adj @ membership).tocsr()


def louvain(adjacency: csr_matrix | np.ndarray, resolution: float = 1.0) -> np.ndarray:
    """\
    Partition a graph by greedy optimization of modularity (Blondel et al., 2008).

    The implementation is deterministic: nodes are visited in a fixed order and
    ties are resolved by the lowest community index. The gain of moving node `i`
    into community `C` is

    .. math::

        k_{i,in}(C) - \\gamma \\frac{k_i \\Sigma_{tot}(C)}{2m}

    where :math:`\\gamma` is the resolution. Local moving and aggregation alternate
    until a level does not merge any communities.

    Parameters
    ----------
    adjacency
        Symmetric, weighted adjacency matrix.
    resolution
        Higher values lead to more, smaller communities.

    Returns
    -------
    Community of each node, numbered by decreasing community size.
    """
    adj = csr_matrix(adjacency, dtype=np.float64)
    labels = np.arange(adj.shape[0])
    m2 = adj.sum()
    if m2 == 0:
        return renumber_by_size(labels)

    while True:
        communities = _renumber_by_appearance(_local_move(adj, resolution, m2))
        if communities.max() + 1 == adj.shape[0]:
            break
        labels = communities[labels]
        adj = _aggregate(adj, communities)
        # a single community can't be merged any further
        if adj.shape[0] == 1:
            break

    return renumber_by_size(labels)


def modularity(adjacency: csr_matrix | np.ndarray, labels: np.ndarray, resolution: float = 1.0) -> float:
    """Resolution-scaled modularity of a partition."""
    adj = csr_matrix(adjacency, dtype=np.float64)
    m2 = adj.sum()
    if m2 == 0:
        return 0.0
    labels = _renumber_by_appearance(np.asarray(labels))
    membership = scipy.sparse.csr_matrix(
        (np.ones(len(labels)), (np.arange(len(labels)), labels)), shape=(len(labels), labels.max() + 1)
    )
    internal = (membership.T @ adj @ membership).diagonal()
    total = np.asarray(membership.T @ adj.sum(axis=1)).ravel()
    return float(np.sum(internal / m2 - resolution * (total / m2) ** 2))
