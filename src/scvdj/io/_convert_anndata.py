"""Convert VdjCells to AnnData and vice-versa"""

from collections.abc import Iterable
from importlib.metadata import version
from typing import cast

import pandas as pd
from anndata import AnnData

from scvdj.util import DataHandler, _doc_params, _is_na2, _join_vdj, tqdm

from ._datastructures import ChainRecord, VdjCell
from ._util import _ChainTypeLog, doc_working_model


def _vdj_obs(vdj_cells: Iterable[VdjCell], sep: str) -> pd.DataFrame:
    """Build the `obs` data frame for a collection of cells.

    Per-chain fields are joined with `sep`, cell-level attributes are stored as-is.
    """
    records = []
    for cell in vdj_cells:
        record = dict(cell)
        if len(cell.chains):
            for field, col in ChainRecord.OBS_COLUMNS.items():
                if field in ChainRecord.CELL_FIELDS:
                    continue
                record[col] = _join_vdj((getattr(chain, field) for chain in cell.chains), sep)
            record["n_chains"] = len(cell.chains)
        records.append(record)

    obs = pd.DataFrame.from_records(records)
    for col in ChainRecord.OBS_COLUMNS.values():
        if col not in obs.columns:
            obs[col] = None
    if "n_chains" not in obs.columns:
        obs["n_chains"] = None
    obs["n_chains"] = obs["n_chains"].astype("Int64")
    obs = obs.set_index("cell_id")
    # AnnData requires indices to be strings
    obs.index = obs.index.astype(str)
    if not obs.index.is_unique:
        raise ValueError("Cell ids need to be unique!")
    return obs


@_doc_params(doc_working_model=doc_working_model)
def from_vdj_cells(vdj_cells: Iterable[VdjCell], *, sep: str = ";") -> AnnData:
    """\
    Convert a collection of :class:`~scvdj.io.VdjCell` objects to :class:`~anndata.AnnData`.

    This is useful for converting arbitrary data formats into
    the scvdj data structure.

    {doc_working_model}

    Parameters
    ----------
    vdj_cells
        A list of :class:`~scvdj.io.VdjCell` objects
    sep
        Delimiter used to join the values of the individual chains.

    Returns
    -------
    :class:`~anndata.AnnData` object with V(D)J information in `obs`.
    """
    obs = _vdj_obs(vdj_cells, sep)
    adata = AnnData(
        X=None,
        obs=obs,
        uns={"scvdj_version": version("scvdj"), "scvdj_sep": sep},
    )
    return adata


@DataHandler.inject_param_docs()
def to_vdj_cells(adata: DataHandler.TYPE, *, vdj_mod: str = "vdj", sep: str = ";") -> list[VdjCell]:
    """\
    Convert an adata object with V(D)J information back to a list of :class:`~scvdj.io.VdjCell`
    objects.
    Inverse function of :func:`from_vdj_cells`.

    Parameters
    ----------
    {adata}
    {vdj_mod}
    {sep}

    Returns
    -------
    List of :class:`~scvdj.io.VdjCell` objects.
    """
    cells = []
    chain_type_log = _ChainTypeLog()

    params = DataHandler(adata, vdj_mod, sep=sep)
    vdj_cols = set(ChainRecord.OBS_COLUMNS.values()) | {"n_chains"}
    other_cols = [c for c in params.adata.obs.columns if c not in vdj_cols]
    tmp_obs = params.adata.obs.loc[:, other_cols].to_dict(orient="index")

    for cell_id in tqdm(params.adata.obs_names):
        tmp_cell = VdjCell(cast(str, cell_id), chain_type_log=chain_type_log)
        # add cell-level metadata
        for k, v in tmp_obs[cell_id].items():
            if not _is_na2(v):
                tmp_cell[k] = v
        for chain in params.get_chains(cell_id):
            tmp_cell.add_chain(chain)
        cells.append(tmp_cell)

    chain_type_log.summary()
    return cells
