from ._cell_count import calc_cell_count
from ._clonotypes import cluster_vdj
from ._diversity import calc_diversity
from ._group_abundance import calc_abundance
from ._repertoire_overlap import calc_similarity
from ._summarize import summarize_chains, summarize_vdj
from ._vdj_usage import calc_usage

__all__ = [
    "calc_abundance",
    "calc_cell_count",
    "calc_diversity",
    "calc_similarity",
    "calc_usage",
    "cluster_vdj",
    "summarize_chains",
    "summarize_vdj",
]
