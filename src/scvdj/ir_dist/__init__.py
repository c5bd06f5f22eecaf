"""Compute distances between the receptor sequences of cells"""

from collections.abc import Sequence
from typing import Literal

import numpy as np
import pandas as pd
from scanpy import logging

from scvdj.io._datastructures import ChainRecord, ChainType
from scvdj.util import DataHandler, _check_chains, _doc_params
from scvdj.util._exceptions import InvalidConfiguration

from . import metrics
from ._graph import knn_membership, snn_graph

__all__ = ["canonical_keys", "knn_membership", "metrics", "sequence_dist", "snn_graph", "vdj_dist"]

MetricType = Literal["levenshtein", "identity"] | metrics.DistanceCalculator

_doc_metrics = """\
metric
    You can choose one of the following metrics:
      * `levenshtein` -- Levenshtein edit distance with unit costs.
        See :class:`~scvdj.ir_dist.metrics.LevenshteinDistanceCalculator`.
      * `identity` -- 0 for identical sequences, 1 otherwise.
        See :class:`~scvdj.ir_dist.metrics.IdentityDistanceCalculator`.
      * any instance of :class:`~scvdj.ir_dist.metrics.DistanceCalculator`.
"""

_doc_canonical_key = """\
.. note::
    Cells are compared based on a canonical key built from their chains:
    chains of the included types with a non-missing sequence are sorted by chain type
    (in the order IGH, IGK, IGL, TRA, TRB, TRD, TRG, other), chain label and sequence.
    The key joins `<chain_type>:<sequence>` of these chains with `_`. Cells with an empty
    key are excluded. Cells that do not share any chain type get a missing (`NaN`) distance.
"""


def _get_distance_calculator(metric: MetricType, *, n_jobs=-1) -> metrics.DistanceCalculator:
    """Returns an instance of :class:`~scvdj.ir_dist.metrics.DistanceCalculator`
    given a metric.
    """
    if isinstance(metric, metrics.DistanceCalculator):
        dist_calc = metric
    elif metric == "levenshtein":
        dist_calc = metrics.LevenshteinDistanceCalculator(n_jobs=n_jobs)
    elif metric == "identity":
        dist_calc = metrics.IdentityDistanceCalculator()
    else:
        raise InvalidConfiguration(f"Invalid distance metric: {metric}.")

    return dist_calc


def _canonical_key(chain_types: Sequence[str | None], seqs: Sequence[str | None], chains: Sequence[str] | None):
    pairs = [
        (t, s)
        for t, s in zip(chain_types, seqs, strict=True)
        if t is not None and s is not None and (chains is None or t in chains)
    ]
    pairs.sort(key=lambda x: (ChainType.priority(x[0]), x[0], x[1]))
    return "_".join(f"{t}:{s}" for t, s in pairs), tuple(sorted({t for t, _ in pairs}))


@DataHandler.inject_param_docs(canonical_key=_doc_canonical_key)
def canonical_keys(
    adata: DataHandler.TYPE,
    *,
    chains: str | Sequence[str] | None = None,
    data_col: str = "cdr3",
    chain_col: str = "chains",
    vdj_mod: str = "vdj",
    sep: str = ";",
) -> pd.DataFrame:
    """\
    Build the canonical key of each cell used for sequence comparison.

    {canonical_key}

    Parameters
    ----------
    {adata}
    {chains}
    {data_col}
    {chain_col}
    {vdj_mod}
    {sep}

    Returns
    -------
    Data frame indexed by the cells of the V(D)J modality with the columns `key`
    (`None` for excluded cells) and `chain_types` (tuple of included chain types).
    """
    params = DataHandler(adata, vdj_mod, sep=sep, chain_col=chain_col)
    return _canonical_keys(params, _check_chains(chains), data_col, chain_col)


def _canonical_keys(
    params: DataHandler, chains: Sequence[str] | None, data_col: str, chain_col: str
) -> pd.DataFrame:
    for col in (data_col, chain_col):
        if col not in ChainRecord.COLUMN_TYPES or col not in params.chain_columns:
            raise InvalidConfiguration(f"`{col}` is not a per-chain column in `obs`.")
    records = [
        _canonical_key(types, seqs, chains)
        for types, seqs in zip(params.chain_lists(chain_col), params.chain_lists(data_col), strict=True)
    ]
    return pd.DataFrame(
        {
            "key": [key if len(key) else None for key, _ in records],
            "chain_types": [types for _, types in records],
        },
        index=params.adata.obs_names,
    )


def _dist_mat(
    keys: pd.DataFrame,
    *,
    metric: MetricType = "levenshtein",
    n_jobs: int = -1,
) -> pd.DataFrame:
    """Compute the cell x cell distance matrix of all cells with a canonical key."""
    keys = keys.loc[keys["key"].notnull(), :]
    unique_keys, inverse = np.unique(keys["key"].values.astype(str), return_inverse=True)
    dist_calc = _get_distance_calculator(metric, n_jobs=n_jobs)

    logging.info(f"Calculating distances between {len(unique_keys)} unique sequences")  # type: ignore
    dist = dist_calc.calc_dist_mat(unique_keys)

    # the chain types are part of the key, so they can be derived at the level of unique keys
    key_types = dict(zip(keys["key"], keys["chain_types"], strict=True))
    all_types = sorted({t for types in key_types.values() for t in types})
    type_idx = {t: i for i, t in enumerate(all_types)}
    type_mat = np.zeros((len(unique_keys), len(all_types)), dtype=int)
    for i, key in enumerate(unique_keys):
        type_mat[i, [type_idx[t] for t in key_types[key]]] = 1
    dist[(type_mat @ type_mat.T) == 0] = np.nan

    logging.hint("Expanding non-unique sequences to cell x cell matrix")  # type: ignore
    dist = dist[np.ix_(inverse, inverse)]
    return pd.DataFrame(dist, index=keys.index, columns=keys.index)


@DataHandler.inject_param_docs(metric=_doc_metrics, canonical_key=_doc_canonical_key)
def vdj_dist(
    adata: DataHandler.TYPE,
    *,
    chains: str | Sequence[str] | None = None,
    data_col: str = "cdr3",
    chain_col: str = "chains",
    metric: MetricType = "levenshtein",
    prefix: str = "",
    key_added: str | None = None,
    inplace: bool = True,
    n_jobs: int = -1,
    vdj_mod: str = "vdj",
    sep: str = ";",
) -> pd.DataFrame | None:
    """\
    Computes the pairwise sequence distance between all cells with V(D)J data.

    {canonical_key}

    Parameters
    ----------
    {adata}
    {chains}
    {data_col}
    {chain_col}
    {metric}
    {prefix}
    key_added
        Key under which the distance matrix is stored in `uns` of the V(D)J modality.
        Defaults to `{{prefix}}vdj_dist`.
    inplace
        If `True`, store the result in `uns`. Otherwise return it.
    n_jobs
        Number of cores to use for distance calculation. :class:`joblib.Parallel` is
        used internally. Via the :class:`joblib.parallel_config` context manager, you can set another
        backend (e.g. `dask`) and adjust other configuration options.
    {vdj_mod}
    {sep}

    Returns
    -------
    Depending on the value of `inplace` either returns nothing or a symmetric
    cell x cell :class:`~pandas.DataFrame` with the distances. It only covers cells
    with a canonical key.
    """
    chains = _check_chains(chains)
    params = DataHandler(adata, vdj_mod, sep=sep, chain_col=chain_col)
    # fail early on an invalid metric
    _get_distance_calculator(metric, n_jobs=n_jobs)
    keys = _canonical_keys(params, chains, data_col, chain_col)
    dist = _dist_mat(keys, metric=metric, n_jobs=n_jobs)

    if inplace:
        key_added = f"{prefix}vdj_dist" if key_added is None else key_added
        params.adata.uns[key_added] = dist
        logging.info(f'Stored result in `adata.uns["{key_added}"]`.')  # type: ignore
    else:
        return dist


@_doc_params(metric=_doc_metrics)
def sequence_dist(
    seqs: Sequence[str],
    seqs2: Sequence[str] | None = None,
    *,
    metric: MetricType = "levenshtein",
    n_jobs: int = -1,
) -> np.ndarray:
    """\
    Calculate a sequence x sequence distance matrix.

    When `seqs` or `seqs2` includes non-unique values, the function internally
    uses only unique sequences to calculate the distances.

    Parameters
    ----------
    seqs
        Nucleotide or amino acid sequences.
    seqs2
        Second array sequences. When omitted, `sequence_dist` computes
        the square matrix of `seqs`.
    {metric}
    n_jobs
        Number of CPU cores to use when running a DistanceCalculator that supports
        paralellization.

    Returns
    -------
    Dense pairwise distance matrix.
    """
    seqs_unique, seqs_unique_inverse = np.unique(np.asarray(seqs, dtype=str), return_inverse=True)
    if seqs2 is not None:
        seqs2_unique, seqs2_unique_inverse = np.unique(np.asarray(seqs2, dtype=str), return_inverse=True)
    else:
        seqs2_unique, seqs2_unique_inverse = None, seqs_unique_inverse

    dist_calc = _get_distance_calculator(metric, n_jobs=n_jobs)
    logging.info(f"Calculating distances with metric {metric}")  # type: ignore
    dist_mat = dist_calc.calc_dist_mat(seqs_unique, seqs2_unique)

    logging.hint("Expanding non-unique sequences to sequence x sequence matrix")  # type: ignore
    return dist_mat[np.ix_(seqs_unique_inverse, seqs2_unique_inverse)]
