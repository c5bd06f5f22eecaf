from importlib.metadata import version

import pandas as pd
from anndata import AnnData
from mudata import MuData

from scvdj.util import _is_na


def _make_adata(obs: pd.DataFrame, mudata: bool = False, *, sep: str = ";") -> AnnData | MuData:
    """Generate an AnnData object from an obs dataframe.

    Per-chain columns are given as strings joined with `sep`, exactly as they are
    stored in `obs`. This makes it possible to write down test cases that are incorrect
    on purpose (e.g. a different number of entries per chain column).

    Missing values are represented as the string `"nan"` in most test cases.

    If `mudata` is `True`, the AnnData object is wrapped in a MuData object as modality `vdj`.
    """
    # AnnData requires indices to be strings
    obs = obs.copy()
    obs.index = obs.index.astype(str)
    for col in obs.columns:
        if obs[col].dtype == object:
            obs[col] = [None if _is_na(v) else v for v in obs[col]]

    adata = AnnData(X=None, obs=obs, uns={"scvdj_version": version("scvdj"), "scvdj_sep": sep})
    if mudata:
        return MuData({"vdj": adata})
    else:
        return adata
