from scvdj.ir_dist import vdj_dist

from ._expressions import filter_vdj, mutate_vdj

__all__ = ["filter_vdj", "mutate_vdj", "vdj_dist"]
