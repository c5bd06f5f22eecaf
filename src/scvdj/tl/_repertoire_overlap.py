from typing import Literal

import numpy as np
import pandas as pd
from scipy.spatial import distance as sc_distance

from scvdj.util import DataHandler
from scvdj.util._exceptions import InvalidConfiguration

from ._group_abundance import _doc_groups, _vdj_obs


@DataHandler.inject_param_docs(groups=_doc_groups)
def calc_similarity(
    adata: DataHandler.TYPE,
    *,
    cluster_col: str,
    clonotype_col: str = "clonotype_id",
    method: Literal["jaccard", "dice"] = "jaccard",
    ref_group: str | None = None,
    vdj_mod: str = "vdj",
) -> pd.DataFrame:
    """\
    Compute the similarity between groups based on the clonotypes they share.

    Each group is represented by the set of its clonotypes. The similarity of two groups is
    `1 - d`, where `d` is the distance of the clonotype presence vectors as computed by
    :func:`scipy.spatial.distance.pdist`. For `jaccard`, this is :math:`|A \\cap B| / |A \\cup B|`,
    for `dice` :math:`2 |A \\cap B| / (|A| + |B|)`.

    Groups without any cell with a clonotype have a similarity of `NaN` with every other group.

    Parameters
    ----------
    {adata}
    {groups}
    method
        Similarity measure, either `jaccard` or `dice`.
    ref_group
        If specified, only compare this group against all other groups.
    {vdj_mod}

    Returns
    -------
    Symmetric group x group :class:`~pandas.DataFrame` with the similarities. If `ref_group`
    is specified, a data frame with a single row for `ref_group` and one column for each other group.
    """
    if method not in ("jaccard", "dice"):
        raise InvalidConfiguration(f"Invalid similarity method: {method}. Valid methods are jaccard and dice.")
    params = DataHandler(adata, vdj_mod)
    obs = _vdj_obs(params, clonotype_col, cluster_col)

    groups = params.get_obs(cluster_col).reindex(params.adata.obs_names).dropna().unique()
    groups = sorted(groups, key=str)
    if ref_group is not None and ref_group not in groups:
        raise InvalidConfiguration(f"Reference group `{ref_group}` not found in column `{cluster_col}`.")

    # Create a table of clonotype presence
    presence = pd.crosstab(obs[cluster_col], obs[clonotype_col]) > 0
    presence = presence.reindex(groups, fill_value=False)

    if 0 in presence.shape:
        sim = np.full((len(groups), len(groups)), np.nan)
    else:
        sim = 1 - sc_distance.squareform(sc_distance.pdist(presence.values.astype(bool), method))
        empty = ~presence.values.any(axis=1)
        sim[empty, :] = np.nan
        sim[:, empty] = np.nan

    sim = pd.DataFrame(sim, index=groups, columns=groups)
    if ref_group is not None:
        sim = sim.loc[[ref_group], [g for g in groups if g != ref_group]]
    return sim
