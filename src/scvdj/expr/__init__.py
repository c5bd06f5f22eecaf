"""Expressions over the chains of a cell, used by :func:`scvdj.pp.filter_vdj` and :func:`scvdj.pp.mutate_vdj`."""

from ._engine import ExpressionContext
from ._parser import Expression, parse_expression
from ._tree import FUNCTIONS, ChainVector

__all__ = ["ChainVector", "Expression", "ExpressionContext", "FUNCTIONS", "parse_expression"]
