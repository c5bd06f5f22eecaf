from collections.abc import Mapping

import numpy as np
import pandas as pd
from anndata import AnnData
from mudata import MuData
from scanpy import logging

from scvdj.expr import ChainVector, ExpressionContext
from scvdj.expr._tree import truthy
from scvdj.io._datastructures import ChainRecord
from scvdj.util import DataHandler, _join_vdj
from scvdj.util._exceptions import InvalidConfiguration

_EXPRESSION_DOC = """\
expr
    Expression evaluated for each cell. Uses python syntax. Per-chain columns
    (e.g. `chains`, `cdr3`, `v_gene`, `reads`) evaluate to one value per chain,
    all other columns in `obs` to a single value. `.chains` refers to `chain_col`,
    `.seqs` to `data_col`. Available functions are `all`, `any`, `unique`, `length`,
    `sum`, `mean`, `min`, `max`, `nchar` and `is_na`.
"""

_PARALLEL_DOC = """\
n_jobs
    Number of CPUs to use for evaluating the expression. Cells are split into chunks
    of `chunksize` cells; with less than two chunks everything runs in a single process.
chunksize
    Number of cells per chunk.
"""


@DataHandler.inject_param_docs(expr=_EXPRESSION_DOC, parallel=_PARALLEL_DOC)
def filter_vdj(
    adata: DataHandler.TYPE,
    expr: str,
    *,
    drop_non_vdj: bool = False,
    data_col: str = "cdr3",
    chain_col: str = "chains",
    vdj_mod: str = "vdj",
    sep: str = ";",
    n_jobs: int = 1,
    chunksize: int = 2000,
) -> AnnData | MuData:
    """\
    Filter cells based on an expression over their chains.

    Where the expression yields one value per chain (e.g. `chains == "IGH"`),
    the values are reduced with `any()`. Use `all()` to require the condition
    for every chain.

    Example:

    .. code-block:: python

        adata_filtered = scvdj.pp.filter_vdj(adata, "'IGH' in chains and 'IGK' in chains")
        adata_filtered = scvdj.pp.filter_vdj(adata, "all(productive) and length(chains) <= 2")

    Parameters
    ----------
    {adata}
    {expr}
    drop_non_vdj
        By default, cells without V(D)J data are kept regardless of the result of the expression.
        If `True`, they are kept only if the expression is true for them (evaluated with empty
        per-chain values).
    {data_col}
    {chain_col}
    {vdj_mod}
    {sep}
    {parallel}

    Returns
    -------
    A view of `adata` with the cells that passed the filter.
    """
    params = DataHandler(adata, vdj_mod, sep=sep, chain_col=chain_col)
    context = ExpressionContext(params, chain_col=chain_col, data_col=data_col)
    expression = context.parse(expr, predicate=True)

    start = logging.info(f"Filtering cells by `{expr}`")  # type: ignore
    has_vdj = params.has_vdj
    values = context.evaluate(
        expression, mask=None if drop_non_vdj else has_vdj, n_jobs=n_jobs, chunksize=chunksize
    )
    keep = np.fromiter((truthy(v) for v in values), dtype=bool, count=len(values))
    if not drop_non_vdj:
        keep |= ~has_vdj

    keep = pd.Series(keep, index=params.adata.obs_names).reindex(params.data.obs_names)
    # cells that are only present in other modalities have no V(D)J data
    keep = keep.fillna(not drop_non_vdj).astype(bool)
    logging.info(f"{keep.sum()} of {len(keep)} cells passed the filter.", time=start)  # type: ignore
    return params.filter_cells(keep.values)


def _to_obs_value(value, sep: str):
    if isinstance(value, ChainVector):
        return _join_vdj(value, sep)
    return value


@DataHandler.inject_param_docs(parallel=_PARALLEL_DOC)
def mutate_vdj(
    adata: DataHandler.TYPE,
    expressions: Mapping[str, str] | None = None,
    *,
    data_col: str = "cdr3",
    chain_col: str = "chains",
    vdj_mod: str = "vdj",
    sep: str = ";",
    n_jobs: int = 1,
    chunksize: int = 2000,
    **named_expressions: str,
) -> None:
    """\
    Derive new columns in `obs` from expressions over the chains of each cell.

    Expressions are evaluated in the order they are given. Later expressions can refer
    to columns created by earlier ones. Results that have one value per chain are stored
    as delimiter-joined strings, like the other per-chain columns. Cells without V(D)J
    data receive missing values.

    Example:

    .. code-block:: python

        scvdj.pp.mutate_vdj(
            adata,
            cdr3_len="nchar(cdr3)",
            long_cdr3="any(cdr3_len > 15)",
        )

    Parameters
    ----------
    {adata}
    expressions
        Mapping of new column names to expressions. See :func:`~scvdj.pp.filter_vdj` for
        the syntax. Existing columns with the same name are overwritten.
    {data_col}
    {chain_col}
    {vdj_mod}
    {sep}
    {parallel}
    **named_expressions
        Further expressions, passed as keyword arguments. Evaluated after `expressions`.

    Returns
    -------
    Nothing, but adds the new columns to `obs`.
    """
    all_expressions = {**(expressions or {}), **named_expressions}
    if not len(all_expressions):
        raise InvalidConfiguration("No expressions specified.")
    for name in all_expressions:
        if name in ChainRecord.COLUMN_TYPES or name in ("n_chains", chain_col):
            raise InvalidConfiguration(f"Column `{name}` holds V(D)J data and can't be overwritten.")

    params = DataHandler(adata, vdj_mod, sep=sep, chain_col=chain_col)
    context = ExpressionContext(params, chain_col=chain_col, data_col=data_col)
    has_vdj = params.has_vdj

    start = logging.info(f"Evaluating {len(all_expressions)} expressions")  # type: ignore
    results = {}
    for name, expr in all_expressions.items():
        # staged results are visible to all subsequent expressions
        expression = context.parse(expr)
        values = context.evaluate(expression, mask=has_vdj, n_jobs=n_jobs, chunksize=chunksize)
        context.stage(name, values, expression.kind, is_vector=expression.is_vector)
        results[name] = [_to_obs_value(v, sep) for v in values]

    for name, values in results.items():
        params.set_obs(name, pd.Series(values, index=params.adata.obs_names))
    logging.hint("Done evaluating expressions.", time=start)  # type: ignore
