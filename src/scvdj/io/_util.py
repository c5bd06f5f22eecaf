from collections import Counter

from scanpy import logging

doc_working_model = """\

.. note::
    V(D)J data is stored in `adata.obs` with one entry per chain in each
    multi-valued column (`chains`, `cdr3`, `v_gene`, ...). Entries are joined
    with `sep`. Cells without V(D)J data have missing values in these columns.
"""


class _ChainTypeLog:
    """\
    Keep track of chains with a type other than those in :class:`~scvdj.io.ChainType`.

    Only the first chain of each type results in a warning, naming the cell it was found in.
    :meth:`summary` reports the number of chains per type once all cells are processed.
    """

    def __init__(self):
        self.counts: Counter[str] = Counter()

    def non_standard_chain(self, cell_id: str, chain_type: str) -> None:
        if not self.counts[chain_type]:
            logging.warning(f"Non-standard chain type `{chain_type}` in cell `{cell_id}`.")  # type: ignore
        self.counts[chain_type] += 1

    def summary(self) -> None:
        if not self.counts:
            return
        types = ", ".join(f"{chain_type} ({n})" for chain_type, n in self.counts.most_common())
        logging.info(f"Chains of non-standard type: {types}.")  # type: ignore
