from importlib.metadata import version

from . import expr, get, io, ir_dist, pp, tl, util

__all__ = ["expr", "get", "io", "ir_dist", "pp", "tl", "util"]

__version__ = version("scvdj")
