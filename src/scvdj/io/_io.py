from collections.abc import Mapping
from types import MappingProxyType

import pandas as pd
from anndata import AnnData
from scanpy import logging

from scvdj.util import DataHandler, _is_na2, _is_true2

from ._convert_anndata import _vdj_obs, from_vdj_cells
from ._datastructures import ChainRecord, VdjCell
from ._util import _ChainTypeLog, doc_working_model

#: Column names of cellranger `*_contig_annotations.csv` files and the corresponding ChainRecord fields
CELLRANGER_COLUMNS = MappingProxyType(
    {
        "chain": "chain_type",
        "cdr3": "cdr3_aa",
        "cdr3_nt": "cdr3_nt",
        "v_gene": "v_gene",
        "d_gene": "d_gene",
        "j_gene": "j_gene",
        "c_gene": "c_gene",
        "reads": "reads",
        "umis": "umis",
        "productive": "productive",
        "raw_clonotype_id": "clonotype_id",
    }
)


def _contigs_to_cells(df: pd.DataFrame, cell_col: str, column_map: Mapping[str, str]) -> list[VdjCell]:
    chain_type_log = _ChainTypeLog()
    chain_fields = set(ChainRecord.OBS_COLUMNS)
    vdj_cells = []
    # sort=False keeps cells and chains in the order of the table (= detection order)
    for cell_id, cell_df in df.groupby(cell_col, sort=False):
        cell = VdjCell(str(cell_id), chain_type_log=chain_type_log)
        for _, chain_series in cell_df.iterrows():
            chain = {}
            for col, field in column_map.items():
                if field in chain_fields and col in chain_series.index:
                    value = chain_series[col]
                    chain[field] = None if _is_na2(value) else value
            for field in ("reads", "umis"):
                if chain.get(field) is not None:
                    chain[field] = int(chain[field])
            if "productive" in chain and chain["productive"] is not None:
                chain["productive"] = _is_true2(chain["productive"])
            for field in ("chain_type", "cdr3_aa", "cdr3_nt", "v_gene", "d_gene", "j_gene", "c_gene", "clonotype_id"):
                if chain.get(field) is not None:
                    chain[field] = str(chain[field])
            if chain.get("chain_type") is None:
                raise ValueError(f"Chain without chain type for cell `{cell_id}`.")
            cell.add_chain(chain)
        vdj_cells.append(cell)
    chain_type_log.summary()
    return vdj_cells


@DataHandler.inject_param_docs(doc_working_model=doc_working_model)
def from_contig_table(
    df: pd.DataFrame,
    adata: AnnData | None = None,
    *,
    cell_col: str | None = None,
    column_map: Mapping[str, str] | None = None,
    filtered: bool = True,
    sep: str = ";",
) -> AnnData | None:
    """\
    Import V(D)J data from a table with one row per chain.

    The table is usually the `filtered_contig_annotations.csv` file produced by
    10x Genomics cellranger, already loaded as a :class:`~pandas.DataFrame`. Columns
    named like the fields of :class:`~scvdj.io.ChainRecord` are recognized as well.

    {doc_working_model}

    Parameters
    ----------
    df
        Table with one row per chain.
    adata
        AnnData object with transcriptomics data. If given, the V(D)J columns are added to
        `adata.obs` in place and cells without V(D)J data receive missing values. Chains of
        cells that are not in `adata` are discarded.
        Otherwise, a new AnnData object is created.
    cell_col
        Column with the cell id. Defaults to `barcode` or `cell_id`, whichever is present.
    column_map
        Mapping of table columns to :class:`~scvdj.io.ChainRecord` fields. Defaults to the cellranger
        column names, falling back to the field names themselves.
    filtered
        Only keep chains marked as `is_cell` and `high_confidence`, if these columns exist.
    {sep}

    Returns
    -------
    A new AnnData object, or nothing if `adata` was specified.
    """
    if cell_col is None:
        cell_col = next((c for c in ("barcode", "cell_id") if c in df.columns), None)
        if cell_col is None:
            raise ValueError("No cell id column found. Please specify `cell_col`.")
    if column_map is None:
        column_map = dict(CELLRANGER_COLUMNS)
        for field in ChainRecord.OBS_COLUMNS:
            if field in df.columns and field not in column_map.values():
                column_map[field] = field
    if filtered:
        for col in ("is_cell", "high_confidence"):
            if col in df.columns:
                df = df.loc[df[col].map(_is_true2), :]

    vdj_cells = _contigs_to_cells(df, cell_col, column_map)
    logging.info(f"Imported {sum(len(c.chains) for c in vdj_cells)} chains of {len(vdj_cells)} cells.")

    if adata is None:
        return from_vdj_cells(vdj_cells, sep=sep)

    obs = _vdj_obs(vdj_cells, sep)
    missing = ~obs.index.isin(adata.obs_names)
    if missing.any():
        logging.warning(f"{missing.sum()} cells with V(D)J data are not present in `adata` and were discarded.")
    obs = obs.reindex(adata.obs_names)
    for col in obs.columns:
        adata.obs[col] = obs[col]
    adata.uns["scvdj_sep"] = sep
    # validate the result
    DataHandler(adata, sep=sep)
