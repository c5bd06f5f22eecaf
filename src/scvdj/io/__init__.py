from ._convert_anndata import from_vdj_cells, to_vdj_cells
from ._datastructures import ChainRecord, ChainType, VdjCell
from ._io import from_contig_table

__all__ = ["ChainRecord", "ChainType", "VdjCell", "from_contig_table", "from_vdj_cells", "to_vdj_cells"]
