from collections.abc import Callable, Iterable, Sequence
from textwrap import dedent
from typing import Any, Union, overload

import awkward as ak
import numpy as np
import pandas as pd
import scipy.sparse
from anndata import AnnData
from joblib import Parallel
from mudata import MuData
from scanpy import logging
from scipy.sparse import issparse
from tqdm.auto import tqdm

from ._exceptions import (
    EmptyGraph,
    InvalidConfiguration,
    InvalidExpression,
    MalformedRecord,
    TypeMismatch,
    UnknownIdentifier,
)

__all__ = [
    "DataHandler",
    "EmptyGraph",
    "InvalidConfiguration",
    "InvalidExpression",
    "MalformedRecord",
    "TypeMismatch",
    "UnknownIdentifier",
    "tqdm",
]

#: Tokens that represent a missing element within a delimiter-joined string
_NA_TOKENS = ("NaN", "nan", "None", "NA", "N/A", "")


def _doc_params(**kwds):
    """\
    Docstrings should start with "\\" in the first line for proper formatting.
    """

    def dec(obj):
        obj.__orig_doc__ = obj.__doc__
        obj.__doc__ = dedent(obj.__doc__).format_map(kwds)
        return obj

    return dec


def _parse_token(token: str, elem_type: type) -> Any:
    """Convert a single element of a delimiter-joined string to its python type."""
    token = token.strip()
    if token in _NA_TOKENS:
        return None
    if elem_type is int:
        try:
            return int(float(token))
        except ValueError:
            return None
    if elem_type is bool:
        return token.lower() in ("true", "t", "1")
    return token


def _split_vdj(value: Any, sep: str, elem_type: type = str, n_chains: int | None = None) -> list:
    """Split a delimiter-joined `obs` value into a list with one element per chain.

    A missing value results in an empty list (a cell without chains). If the number of
    chains of the cell is given, it results in one missing element per chain instead.
    """
    if _is_na2(value):
        return [] if n_chains is None else [None] * int(n_chains)
    return [_parse_token(t, elem_type) for t in str(value).split(sep)]


def _join_vdj(values: Iterable, sep: str) -> str:
    """Inverse of :func:`_split_vdj`. Missing elements are written as `None`."""
    return sep.join("None" if _is_na2(v) else str(v) for v in values)


class DataHandler:
    """\
    Transparent access to V(D)J data in both AnnData and MuData objects.

    This is the record store of scvdj. V(D)J data is stored in `obs` of the V(D)J
    modality as delimiter-joined strings with one entry per chain. The DataHandler
    parses these columns into ragged per-cell arrays and checks that all chain columns
    of a cell have the same number of entries.

    DataHandler may be called with another DataHandler instance as `data` attribute. In that
    case all attributes are taken from the existing DataHandler instance and all keyword attributes
    are ignored.

    Parameters
    ----------
    {adata}
    {vdj_mod}
    {sep}
    {chain_col}
    validate
        Check the one-entry-per-chain invariant and raise :class:`MalformedRecord` if it is violated.
    """

    #: Supported Data types
    TYPE = Union[AnnData, MuData, "DataHandler"]

    def __init__(
        self,
        data: "DataHandler.TYPE",
        vdj_mod: str | None = None,
        *,
        sep: str = ";",
        chain_col: str = "chains",
        validate: bool = True,
    ):
        if isinstance(data, DataHandler):
            self._data = data._data
            self._vdj_mod = data._vdj_mod
            self._sep = data._sep
            self._chain_col = data._chain_col
            # parsed columns can be shared, the underlying obs did not change
            self._chain_cache = data._chain_cache
        else:
            self._data = data
            self._vdj_mod = vdj_mod
            self._sep = sep
            self._chain_col = chain_col
            self._chain_cache = {}
            if validate:
                self._check_chain_cardinality()

    def _check_chain_cardinality(self):
        """Check that every chain column has one entry per chain for every cell.

        Raises a :class:`MalformedRecord` error naming the first offending cell and column.
        """
        columns = self.chain_columns
        if len(columns) < 2:
            return
        ref_col = self._chain_col if self._chain_col in columns else columns[0]
        ref_len = self._num(ref_col)
        for col in columns:
            if col == ref_col:
                continue
            mismatch = np.flatnonzero(self._num(col) != ref_len)
            if len(mismatch):
                raise MalformedRecord(str(self.adata.obs_names[mismatch[0]]), col)

    def _num(self, column: str) -> np.ndarray:
        return ak.to_numpy(ak.num(self.chain_values(column), axis=1))

    @property
    def sep(self) -> str:
        """Delimiter of multi-valued columns"""
        return self._sep

    @property
    def chain_col(self) -> str:
        """Column with the chain type of each chain"""
        return self._chain_col

    @property
    def chain_columns(self) -> list[str]:
        """Per-chain columns present in `obs` of the V(D)J modality."""
        # import here to avoid circular import
        from scvdj.io._datastructures import ChainRecord

        obs_columns = set(self.adata.obs.columns)
        return [c for c in ChainRecord.COLUMN_TYPES if c in obs_columns]

    def chain_values(self, column: str) -> ak.Array:
        """\
        Ragged array with the parsed values of a per-chain column.

        The outer dimension corresponds to `adata.obs_names` of the V(D)J modality, the inner
        dimension to the chains of each cell (empty for non-V(D)J cells).
        A missing value in a cell with chains stands for a missing element in each chain.
        """
        from scvdj.io._datastructures import ChainRecord

        if column not in self._chain_cache:
            if column not in ChainRecord.COLUMN_TYPES:
                raise KeyError(f"`{column}` is not a per-chain column.")
            if column not in self.adata.obs.columns:
                raise KeyError(f"column `{column}` not found in `obs`.")
            elem_type = ChainRecord.COLUMN_TYPES[column]
            values = self.adata.obs[column]
            if column == self._chain_col or self._chain_col not in self.chain_columns:
                parsed = [_split_vdj(x, self._sep, elem_type) for x in values]
            else:
                # only the chain column decides whether a cell has chains
                n_chains = self._num(self._chain_col)
                parsed = [_split_vdj(x, self._sep, elem_type, n) for x, n in zip(values, n_chains, strict=True)]
            self._chain_cache[column] = ak.Array(parsed)
        return self._chain_cache[column]

    def chain_lists(self, column: str) -> list[list]:
        """Like :meth:`chain_values`, but converted to a list of python lists."""
        return ak.to_list(self.chain_values(column))

    @property
    def n_chains(self) -> np.ndarray:
        """Number of chains of each cell of the V(D)J modality."""
        columns = self.chain_columns
        if not len(columns):
            return np.zeros(self.adata.n_obs, dtype=int)
        ref_col = self._chain_col if self._chain_col in columns else columns[0]
        return self._num(ref_col).astype(int)

    @property
    def has_vdj(self) -> np.ndarray:
        """Boolean mask of cells with at least one chain."""
        return self.n_chains > 0

    def get_chains(self, cell_id: str) -> list:
        """\
        Get the chains of a cell as :class:`~scvdj.io.ChainRecord` objects.

        Chains are returned in detection order. Returns an empty list for non-V(D)J cells.
        """
        from scvdj.io._datastructures import ChainRecord

        i = self.adata.obs_names.get_loc(cell_id)
        values = {col: self.chain_values(col)[i].to_list() for col in self.chain_columns}
        clonotype_id = None
        if "clonotype_id" in self.adata.obs.columns:
            clonotype_id = self.adata.obs["clonotype_id"].iloc[i]
            clonotype_id = None if _is_na2(clonotype_id) else str(clonotype_id)

        return [
            ChainRecord.from_obs_values({col: v[j] for col, v in values.items()} | {"clonotype_id": clonotype_id})
            for j in range(self.n_chains[i])
        ]

    def set_derived(self, cell_id: str, column: str, value: Any) -> None:
        """\
        Set a derived value for a single cell.

        The column is created if it doesn't exist yet. All other cells have a missing value then.
        """
        obs = self.adata.obs
        if column not in obs.columns:
            obs[column] = pd.Series(None, index=obs.index, dtype=object)
        elif isinstance(obs[column].dtype, pd.CategoricalDtype):
            obs[column] = obs[column].astype(object)
        obs.loc[cell_id, column] = value
        if isinstance(self.data, MuData):
            self.set_obs(column, obs[column])

    def filter_cells(self, predicate: Callable[[str], bool] | Sequence[bool] | np.ndarray) -> AnnData | MuData:
        """\
        Subset the outermost container to cells for which `predicate` holds.

        Parameters
        ----------
        predicate
            Either a function that receives a cell id and returns a boolean, or a boolean mask
            aligned to the cells of the outermost container.

        Returns
        -------
        A view of the AnnData/MuData object. Chain data is not copied.
        """
        if callable(predicate):
            mask = np.fromiter(
                (bool(predicate(c)) for c in self.data.obs_names), dtype=bool, count=len(self.data.obs_names)
            )
        else:
            mask = np.asarray(predicate, dtype=bool)
            if mask.shape[0] != len(self.data.obs_names):
                raise ValueError("Boolean mask does not align with the cells of the data object.")
        return self.data[mask]

    @overload
    def get_obs(self, columns: str) -> pd.Series: ...

    @overload
    def get_obs(self, columns: Sequence[str]) -> pd.DataFrame: ...

    def get_obs(self, columns):
        """\
        Get one or multiple obs columns from either MuData or V(D)J AnnData

        Checks if the column is available in `MuData.obs`. If it can't be found or DataHandler is initalized without MuData
        object, `AnnData.obs` is tried.

        The returned object always has the dimensions and index of MuData, even if
        only columns from AnnData are used. It is easy to subset to AnnData if required:

        .. code-block:: python

            params.get_obs([col1, col2]).reindex(params.adata.obs_names)

        Parameters
        ----------
        columns
            one or multiple columns.

        Returns
        -------
        If this is a single column passed as `str`, a :class:`~pandas.Series` will be returned,
        otherwise a :class:`~pandas.DataFrame`.
        """
        if isinstance(columns, str):
            return self._get_obs_col(columns)
        else:
            if len(columns):
                df = pd.concat({c: self._get_obs_col(c) for c in columns}, axis=1)
                assert df.index.is_unique, "Index not unique"
                return df.reindex(self.data.obs_names)
            else:
                # return empty dataframe (only index) if no columns are specified
                return self.data.obs.loc[:, []]

    def _get_obs_col(self, column: str) -> pd.Series:
        try:
            return self.mdata.obs[column]
        except (KeyError, AttributeError):
            return self.adata.obs[column]

    def has_obs(self, column: str) -> bool:
        """Check if a column is available through :meth:`get_obs`."""
        try:
            self._get_obs_col(column)
        except KeyError:
            return False
        return True

    def set_obs(self, key: str, value: pd.Series | Sequence[Any] | np.ndarray) -> None:
        """Store results in .obs of AnnData and MuData.

        If `value` is not a Series, if the length is equal to the params.mdata, we assume it aligns to the
        MuData object. Otherwise, if the length is equal to the params.adata, we assume it aligns to the
        AnnData object. Otherwise, a ValueError is thrown.

        The result will be written to `mdata.obs["{vdj_mod}:{key}"]` and to `adata.obs[key]`.
        """
        # index series with AnnData (in case MuData has different dimensions)
        if not isinstance(value, pd.Series):
            if len(value) == self.data.shape[0]:
                value = pd.Series(value, index=self.data.obs_names)
            elif len(value) == self.adata.shape[0]:
                value = pd.Series(value, index=self.adata.obs_names)
            else:
                raise ValueError("Provided values without index and can't align with either MuData or AnnData.")
        if key in self._chain_cache:
            del self._chain_cache[key]
        if isinstance(self.data, MuData):
            # write to both AnnData and MuData
            if self._vdj_mod is None:
                raise ValueError("Trying to write to both AnnData and Mudata, but no `vdj_mod` is specified.")
            mudata_key = f"{self._vdj_mod}:{key}"
            adata_key = key

            self.mdata.obs[mudata_key] = value
            self.adata.obs[adata_key] = value
            logging.info(f'Stored result in `mdata.obs["{self._vdj_mod}:{key}"]`.')
        else:
            self.data.obs[key] = value
            logging.info(f'Stored result in `adata.obs["{key}"]`.')

    @property
    def adata(self) -> AnnData:
        """Reference to the AnnData object of the V(D)J modality."""
        if isinstance(self._data, AnnData):
            return self._data
        else:
            if self._vdj_mod is not None:
                try:
                    return self._data.mod[self._vdj_mod]
                except KeyError:
                    raise KeyError(f"There is no V(D)J modality in MuData under key '{self._vdj_mod}'") from None
            else:
                raise AttributeError("DataHandler was initalized with MuData, but without specifying a modality")

    @property
    def data(self) -> MuData | AnnData:
        """Get the outermost container. If MuData is defined, return the MuData object.
        Otherwise the AnnData object.
        """
        return self._data

    @property
    def mdata(self) -> MuData:
        """Reference to the MuData object.

        Raises an attribute error if only AnnData is available.
        """
        if isinstance(self._data, MuData):
            return self._data
        else:
            raise AttributeError("DataHandler was initalized with only AnnData")

    @staticmethod
    def inject_param_docs(
        **kwargs: str,
    ) -> Callable:
        """Inject parameter documentation into a function docstring

        Parameters
        ----------
        **kwargs
            Further, custom {keys} to replace in the docstring.
        """
        doc = {}
        doc["adata"] = dedent(
            """\
            adata
                AnnData or MuData object that contains V(D)J data in `obs`.
            """
        )
        doc["vdj_mod"] = dedent(
            """\
            vdj_mod
                Name of the modality with V(D)J data in the :class:`~mudata.MuData` object.
                If an :class:`~anndata.AnnData` object is passed to the function, this parameter is ignored.
            """
        )
        doc["sep"] = dedent(
            """\
            sep
                Delimiter that separates the values of the individual chains in multi-valued columns.
            """
        )
        doc["chain_col"] = dedent(
            """\
            chain_col
                Column in `obs` with the chain type of each chain.
            """
        )
        doc["data_col"] = dedent(
            """\
            data_col
                Per-chain column with the sequences to compare. Defaults to the amino acid CDR3 sequence.
            """
        )
        doc["chains"] = dedent(
            """\
            chains
                Chain types to include, e.g. `["IGH", "IGK"]`. If `None`, all chains are used.
            """
        )
        doc["prefix"] = dedent(
            """\
            prefix
                Prefix added to the names of all result columns and keys. Use different prefixes to
                keep results of multiple runs.
            """
        )
        doc["inplace"] = dedent(
            """\
            inplace
                If `True`, a column with the result will be stored in `obs`. Otherwise the result will be returned.
            """
        )
        doc["key_added"] = dedent(
            """\
            key_added
                Key under which the result will be stored in `obs`, if `inplace` is `True`. When the function is running
                on :class:`~mudata.MuData`, the result will be written to both `mdata.obs["{vdj_mod}:{key_added}"]` and
                `mdata.mod[vdj_mod].obs[key_added]`.
            """
        )
        return _doc_params(**doc, **kwargs)


DataHandler = DataHandler.inject_param_docs()(DataHandler)


def _allclose_sparse(A, B, atol=1e-8):
    """Check if two sparse matrices are almost equal.

    From https://stackoverflow.com/questions/47770906/how-to-test-if-two-sparse-arrays-are-almost-equal/47771340#47771340
    """
    if np.array_equal(A.shape, B.shape) == 0:
        return False

    r1, c1, v1 = scipy.sparse.find(A)
    r2, c2, v2 = scipy.sparse.find(B)
    index_match = np.array_equal(r1, r2) & np.array_equal(c1, c2)

    if index_match == 0:
        return False
    else:
        return np.allclose(v1, v2, atol=atol, equal_nan=True)


def _is_symmetric(M) -> bool:
    """Check if matrix M is symmetric"""
    if issparse(M):
        return _allclose_sparse(M, M.T)
    else:
        return np.allclose(M, M.T, 1e-6, 1e-6, equal_nan=True)


def _is_na2(x):
    """Check if a single object or string is NaN. See `_is_na` for the vectorized version."""
    return pd.isnull(x) or x in ("NaN", "nan", "None", "N/A", "")


_is_na = np.vectorize(_is_na2, otypes=[bool])


def _is_true2(x):
    """Evaluates true for bool(x) unless _is_false(x) evaluates true.
    I.e. strings like "false" evaluate as False.

    Everything that evaluates to _is_na(x) evaluates evaluate to False.
    """
    return not _is_false2(x) and not _is_na2(x)


def _is_false2(x):
    """Evaluates false for bool(False) and str("false")/str("False").

    Everything that is NA as defined in `is_na()` evaluates to False.
    """
    return (x in ("False", "false", "0") or not bool(x)) and not _is_na2(x)


def _check_columns(params: DataHandler, columns: Iterable[str | None]) -> None:
    """Raise :class:`InvalidConfiguration` if one of the columns is not available in `obs`."""
    for col in columns:
        if col is not None and not params.has_obs(col):
            raise InvalidConfiguration(f"column `{col}` not found in `obs`.")


def _check_chains(chains: str | Sequence[str] | None) -> list[str] | None:
    """Validate and normalize a chain inclusion filter."""
    # import here to avoid circular import
    from scvdj.io._datastructures import ChainType

    if chains is None:
        return None
    if isinstance(chains, str):
        chains = [chains]
    chains = list(chains)
    if not len(chains):
        raise InvalidConfiguration("`chains` must not be empty. Use `None` to include all chains.")
    for c in chains:
        if c not in ChainType.__members__:
            raise InvalidConfiguration(
                f"Unknown chain type `{c}`. Valid chain types are {', '.join(ChainType.__members__)}."
            )
    return chains


def _parallelize_with_joblib(delayed_objects, *, total=None, **kwargs):
    """Wrapper around joblib.Parallel that shows a progressbar if the backend supports it.

    Progressbar solution from https://stackoverflow.com/a/76726101/2340703
    """
    try:
        return tqdm(Parallel(return_as="generator", **kwargs)(delayed_objects), total=total)
    except ValueError:
        logging.info(
            "Backend doesn't support return_as='generator'. No progress bar will be shown. "
            "Consider setting verbosity in joblib.parallel_config"
        )
        return Parallel(return_as="list", **kwargs)(delayed_objects)

