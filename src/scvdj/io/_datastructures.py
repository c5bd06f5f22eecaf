"""Datastructures for V(D)J data.

Only used as intermediate storage: within :class:`~anndata.AnnData`, chains
are stored as delimiter-joined strings in `obs`, one entry per chain.
"""

from collections.abc import Collection, Iterator, Mapping, MutableMapping
from dataclasses import dataclass
from enum import Enum, auto
from types import MappingProxyType
from typing import Any, ClassVar

from scvdj.util import _is_na2
from scvdj.util._exceptions import MalformedRecord

from ._util import _ChainTypeLog


class ChainType(Enum):
    """Receptor chain types.

    The order of the members is the priority used to sort chains when building
    canonical keys for sequence comparison.
    """

    IGH = auto()
    IGK = auto()
    IGL = auto()
    TRA = auto()
    TRB = auto()
    TRD = auto()
    TRG = auto()
    other = auto()

    @classmethod
    def from_label(cls, label: str) -> "ChainType":
        """Map a chain label to a member. Unknown labels map to `other`."""
        try:
            return cls[label]
        except KeyError:
            return cls.other

    @classmethod
    def priority(cls, label: str) -> int:
        return cls.from_label(label).value


@dataclass(frozen=True)
class ChainRecord:
    """One detected receptor chain.

    Chains are read-only once imported. Fields other than `chain_type` may be `None`.
    """

    chain_type: str
    cdr3_aa: str | None = None
    cdr3_nt: str | None = None
    v_gene: str | None = None
    d_gene: str | None = None
    j_gene: str | None = None
    c_gene: str | None = None
    reads: int | None = None
    umis: int | None = None
    productive: bool | None = None
    clonotype_id: str | None = None

    #: Column in `obs` that holds each field
    OBS_COLUMNS: ClassVar[Mapping[str, str]] = MappingProxyType(
        {
            "chain_type": "chains",
            "cdr3_aa": "cdr3",
            "cdr3_nt": "cdr3_nt",
            "v_gene": "v_gene",
            "d_gene": "d_gene",
            "j_gene": "j_gene",
            "c_gene": "c_gene",
            "reads": "reads",
            "umis": "umis",
            "productive": "productive",
            "clonotype_id": "clonotype_id",
        }
    )

    #: Fields that are stored once per cell rather than once per chain
    CELL_FIELDS: ClassVar[tuple[str, ...]] = ("clonotype_id",)

    #: Element type of the per-chain columns in `obs`
    COLUMN_TYPES: ClassVar[Mapping[str, type]] = MappingProxyType(
        {
            "chains": str,
            "cdr3": str,
            "cdr3_nt": str,
            "v_gene": str,
            "d_gene": str,
            "j_gene": str,
            "c_gene": str,
            "reads": int,
            "umis": int,
            "productive": bool,
        }
    )

    @classmethod
    def from_obs_values(cls, values: Mapping[str, Any]) -> "ChainRecord":
        """Build a chain from a mapping of `obs` column names to (parsed) values."""
        kwargs = {f: values.get(col) for f, col in cls.OBS_COLUMNS.items()}
        return cls(**kwargs)


class VdjCell(MutableMapping):
    """Data structure for a cell with V(D)J data.

    A VdjCell holds an ordered list of :class:`ChainRecord` objects (detection
    order is preserved) and cell-level attributes, which can be set in a dict-like
    fashion. Fields listed in `cell_attribute_fields` are transferred to the
    cell-level when added through a chain. They are required to have the same value
    for all chains.

    Parameters
    ----------
    cell_id
        cell id or barcode. Needs to match the cell id used for transcriptomics
        data, if any.
    cell_attribute_fields
        Chain fields which are supposed to be stored at the cell-level.
        Adding a chain whose value differs from the value already present raises
        a :class:`~scvdj.util.MalformedRecord` error.
    chain_type_log
        Collects chains of non-standard type across cells, such that each type is reported
        only once. If not specified, every such chain results in a warning.
    """

    def __init__(
        self,
        cell_id: str,
        cell_attribute_fields: Collection[str] = ChainRecord.CELL_FIELDS,
        *,
        chain_type_log: _ChainTypeLog | None = None,
    ):
        self._chain_type_log = _ChainTypeLog() if chain_type_log is None else chain_type_log
        self._cell_attribute_fields = cell_attribute_fields
        self._cell_attrs = {}
        self._chains = []
        self["cell_id"] = cell_id

    def __repr__(self):
        return f"VdjCell {self.cell_id} with {len(self.chains)} chains"

    @property
    def cell_id(self) -> str:
        """Unique identifier (barcode) of the cell."""
        return self["cell_id"]

    @property
    def chains(self) -> list[ChainRecord]:
        """Chains added to the cell, in detection order."""
        return self._chains

    def __delitem__(self, key) -> None:
        del self._cell_attrs[key]

    def __getitem__(self, key):
        return self._cell_attrs[key]

    def __iter__(self) -> Iterator:
        return iter(self._cell_attrs)

    def __len__(self) -> int:
        return len(self._cell_attrs)

    def __setitem__(self, k, v) -> None:
        if _is_na2(v):
            v = None
        existing_value = self._cell_attrs.get(k)
        if existing_value is not None and v is not None and existing_value != v:
            raise MalformedRecord(
                self._cell_attrs.get("cell_id", "?"),
                k,
                "Cell-level attributes differ between different chains. "
                f"Already present: `{existing_value}`. Tried to add `{v}`.",
            )
        if existing_value is None:
            self._cell_attrs[k] = v

    def add_chain(self, chain: ChainRecord | Mapping) -> None:
        """Add a chain to the cell.

        `chain` can be a :class:`ChainRecord` or a mapping of ChainRecord field names to values.
        """
        if not isinstance(chain, ChainRecord):
            chain = {k: None if _is_na2(v) else v for k, v in chain.items()}
            chain = ChainRecord(**chain)

        for tmp_field in self._cell_attribute_fields:
            self[tmp_field] = getattr(chain, tmp_field, None)

        if chain.chain_type not in ChainType.__members__:
            self._chain_type_log.non_standard_chain(self.cell_id, chain.chain_type)

        self.chains.append(chain)
