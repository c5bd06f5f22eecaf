import itertools
from collections.abc import Sequence
from typing import Any

import joblib
import numpy as np
import pandas as pd

from scvdj.io._datastructures import ChainRecord
from scvdj.util import DataHandler, _parallelize_with_joblib
from scvdj.util._exceptions import InvalidConfiguration, UnknownIdentifier

from ._parser import Expression, parse_expression
from ._tree import ANY, BOOL, NUM, STR, ChainVector, kind_of_type

_INFERRED_KINDS = {
    "string": STR,
    "boolean": BOOL,
    "integer": NUM,
    "floating": NUM,
    "mixed-integer-float": NUM,
    "decimal": NUM,
}


def _kind_of_series(series: pd.Series) -> str:
    """Kind of the values of a cell-level column"""
    if isinstance(series.dtype, pd.CategoricalDtype):
        series = pd.Series(series.cat.categories)
    if pd.api.types.is_bool_dtype(series.dtype):
        return BOOL
    if pd.api.types.is_numeric_dtype(series.dtype):
        return NUM
    return _INFERRED_KINDS.get(pd.api.types.infer_dtype(series, skipna=True), ANY)


def _scalar_values(series: pd.Series) -> list:
    """Convert a cell-level column to a list of python objects, `None` for missing values"""
    values = series.astype(object)
    return values.where(pd.notna(values), None).tolist()


def _evaluate_chunk(expression: Expression, columns: dict[str, list], vector_names: set[str]) -> list:
    n = len(next(iter(columns.values()))) if len(columns) else 0
    res = []
    for i in range(n):
        env = {
            name: ChainVector(values[i]) if name in vector_names else values[i] for name, values in columns.items()
        }
        res.append(expression.evaluate(env))
    return res


class ExpressionContext:
    """\
    Binds expressions to the cells of a V(D)J modality.

    Identifiers resolve (in this order) to columns staged with :meth:`stage`,
    per-chain columns (evaluated as one value per chain) and cell-level columns in `obs`
    (evaluated as a scalar). `.chains` is an alias for `chain_col` and `.seqs` for `data_col`.

    Parameters
    ----------
    params
        DataHandler of the V(D)J modality
    chain_col
        Per-chain column `.chains` stands for.
    data_col
        Per-chain column `.seqs` stands for.
    """

    def __init__(self, params: DataHandler, *, chain_col: str | None = None, data_col: str = "cdr3"):
        chain_col = params.chain_col if chain_col is None else chain_col
        for col in (chain_col, data_col):
            if col not in ChainRecord.COLUMN_TYPES:
                raise InvalidConfiguration(
                    f"`{col}` is not a per-chain column. Valid columns are {', '.join(ChainRecord.COLUMN_TYPES)}."
                )
        self.params = params
        self.aliases = {"chains": chain_col, "seqs": data_col}
        self._chain_columns = set(params.chain_columns)
        self._staged: dict[str, tuple[list, str, bool]] = {}

    def resolve(self, name: str) -> tuple[str, str, bool]:
        """Map an identifier to `(name, kind, is_vector)`."""
        if name in self._staged:
            _, kind, is_vector = self._staged[name]
            return name, kind, is_vector
        if name in self._chain_columns:
            return name, kind_of_type(ChainRecord.COLUMN_TYPES[name]), True
        if name in ChainRecord.COLUMN_TYPES:
            raise UnknownIdentifier(name, f"Per-chain column `{name}` not found in `obs`.")
        if self.params.has_obs(name):
            return name, _kind_of_series(self.params.get_obs(name)), False
        raise UnknownIdentifier(name)

    def parse(self, text: str, *, predicate: bool = False) -> Expression:
        """Parse and type-check an expression against the available columns."""
        return parse_expression(text, self.resolve, aliases=self.aliases, predicate=predicate)

    def stage(self, name: str, values: Sequence[Any], kind: str, *, is_vector: bool = False) -> None:
        """\
        Make values visible to subsequently parsed expressions under `name`.

        `values` are aligned to the cells of the V(D)J modality. If `is_vector` is `True`,
        each value is a sequence with one element per chain (`None` for no chains).
        """
        if is_vector:
            values = [() if v is None else tuple(v) for v in values]
        self._staged[name] = (list(values), kind, is_vector)

    def _column(self, name: str) -> list:
        if name in self._staged:
            return self._staged[name][0]
        if name in self._chain_columns:
            return self.params.chain_lists(name)
        series = self.params.get_obs(name).reindex(self.params.adata.obs_names)
        return _scalar_values(series)

    def evaluate(
        self,
        expression: Expression,
        *,
        mask: np.ndarray | None = None,
        n_jobs: int = 1,
        chunksize: int = 2000,
    ) -> list:
        """\
        Evaluate an expression for every cell of the V(D)J modality.

        Parameters
        ----------
        expression
            A parsed expression.
        mask
            Only evaluate cells where `mask` is `True`. The result is `None` for all other cells.
        n_jobs
            Number of CPUs to use for evaluation. Cells are processed in chunks of `chunksize`
            cells. Parallelization only kicks in if there are at least two chunks.
        chunksize
            Number of cells per chunk.

        Returns
        -------
        List with one value per cell, aligned to `params.adata.obs_names`.
        """
        n_obs = self.params.adata.n_obs
        idx = np.arange(n_obs) if mask is None else np.flatnonzero(mask)
        names = expression.identifiers
        vector_names = {
            n for n in names if (self._staged[n][2] if n in self._staged else n in self._chain_columns)
        }
        columns = {}
        for name in names:
            values = self._column(name)
            columns[name] = [values[i] for i in idx]

        if not len(columns):
            # constant expression
            values = [expression.evaluate({}) for _ in idx]
        elif n_jobs == 1 or len(idx) < 2 * chunksize:
            values = _evaluate_chunk(expression, columns, vector_names)
        else:
            chunks = [(start, min(start + chunksize, len(idx))) for start in range(0, len(idx), chunksize)]
            values = list(
                itertools.chain.from_iterable(
                    _parallelize_with_joblib(
                        (
                            joblib.delayed(_evaluate_chunk)(
                                expression, {k: v[start:stop] for k, v in columns.items()}, vector_names
                            )
                            for start, stop in chunks
                        ),
                        total=len(chunks),
                        n_jobs=n_jobs,
                    )
                )
            )

        res: list = [None] * n_obs
        for i, value in zip(idx, values, strict=True):
            res[i] = value
        return res
