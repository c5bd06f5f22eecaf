import abc
import itertools
from collections.abc import Sequence

import joblib
import numpy as np
from Levenshtein import distance as levenshtein_dist
from scanpy import logging

from scvdj.util import _doc_params, _parallelize_with_joblib

_doc_params_parallel_distance_calculator = """\
n_jobs
    Number of jobs to use for the pairwise distance calculation, passed to
    :class:`joblib.Parallel`. If -1, use all CPUs.
    Via the :class:`joblib.parallel_config` context manager, another backend (e.g. `dask`)
    can be selected.
"""


_doc_dist_mat = """\
Calculates the full pairwise distance matrix.

.. important::
  * The result is a dense matrix of non-negative floats.
  * Sequences are compared as a whole. For cells with multiple chains, the
    sequences of all chains are concatenated into a canonical key first
    (see :func:`~scvdj.ir_dist.canonical_keys`).

"""


class DistanceCalculator(abc.ABC):
    """\
    Abstract base class for a :term:`CDR3`-sequence distance calculator.
    """

    #: dtype of the distance matrix. Floating point to support `NaN` for incomparable cells.
    DTYPE = "float64"

    @_doc_params(dist_mat=_doc_dist_mat)
    @abc.abstractmethod
    def calc_dist_mat(self, seqs: Sequence[str], seqs2: Sequence[str] | None = None) -> np.ndarray:
        """\
        Calculate pairwise distance matrix of all sequences in `seqs` and `seqs2`.

        When `seqs2` is omitted, computes the pairwise distance of `seqs` against
        itself.

        {dist_mat}

        Parameters
        ----------
        seqs
            array containing CDR3 sequences. Must not contain duplicates.
        seqs2
            second array containing CDR3 sequences. Must not contain
            duplicates either.

        Returns
        -------
        Dense pairwise distance matrix.
        """

    @staticmethod
    def squarify(triangular_matrix: np.ndarray) -> np.ndarray:
        """Mirror an upper triangular matrix at the diagonal to make it a square matrix."""
        assert triangular_matrix.shape[0] == triangular_matrix.shape[1], "needs to be square matrix"
        return np.triu(triangular_matrix) + np.triu(triangular_matrix, k=1).T


@_doc_params(params=_doc_params_parallel_distance_calculator)
class ParallelDistanceCalculator(DistanceCalculator):
    """
    Abstract base class for a DistanceCalculator that computes distances in parallel.

    It does so in a blockwise fashion. The function computing distances
    for a single block needs to be overriden.

    Parameters
    ----------
    {params}
    """

    def __init__(self, *, n_jobs: int = -1):
        self.n_jobs = n_jobs

    @abc.abstractmethod
    def _compute_block(
        self,
        seqs1: Sequence[str],
        seqs2: Sequence[str] | None,
        origin: tuple[int, int],
    ) -> tuple[np.ndarray, tuple[int, int]]:
        """Compute the distances for a block of the matrix

        Parameters
        ----------
        seqs1
            array containing sequences
        seqs2
            other array containing sequences. If `None` compute the square matrix
            of `seqs1`. Only the upper triangle including the diagonal needs to be filled.
        origin
            row, col coordinates of the origin of the block.

        Returns
        -------
        The block as dense array and `origin`.
        """

    @staticmethod
    def _block_iter(
        seqs1: Sequence[str],
        seqs2: Sequence[str] | None = None,
        block_size: int = 50,
    ):
        """Iterate over sequences in blocks.

        Parameters
        ----------
        seqs1
            array containing (unique) sequences
        seqs2
            array containing other sequences. If `None` compute
            the square matrix of `seqs1` and iterate over the upper triangle (including
            the diagonal) only.
        block_size
            side length of a block (will have `block_size ** 2` elements.)

        Yields
        ------
        seqs1
            subset of length `block_size` of seqs1
        seqs2
            subset of length `block_size` of seqs2. If seqs2 is None, this will
            be `None` if the block is on the diagonal, or a subset of seqs1 otherwise.
        origin
            (row, col) coordinates of the origin of the block.
        """
        square_mat = seqs2 is None
        if square_mat:
            seqs2 = seqs1
        for row in range(0, len(seqs1), block_size):
            start_col = row if square_mat else 0
            for col in range(start_col, len(seqs2), block_size):
                if row == col and square_mat:
                    # block on the diagonal. Only the upper triangle is required.
                    yield seqs1[row : row + block_size], None, (row, row)
                else:
                    yield seqs1[row : row + block_size], seqs2[col : col + block_size], (row, col)

    def calc_dist_mat(self, seqs: Sequence[str], seqs2: Sequence[str] | None = None) -> np.ndarray:
        """Calculate the distance matrix.

        See :meth:`DistanceCalculator.calc_dist_mat`.
        """
        shape = (len(seqs), len(seqs2)) if seqs2 is not None else (len(seqs), len(seqs))
        dist_mat = np.zeros(shape, dtype=self.DTYPE)
        if 0 in shape:
            return dist_mat

        problem_size = shape[0] * shape[1]
        # dynamically adjust the block size such that there are ~1000 blocks within a range of 50 and 5000
        block_size = int(np.ceil(min(max(np.sqrt(problem_size / 1000), 50), 5000)))
        logging.info(f"block size set to {block_size}")  # type: ignore

        # precompute blocks as list to have total number of blocks for progressbar
        blocks = list(self._block_iter(seqs, seqs2, block_size=block_size))
        block_results = _parallelize_with_joblib(
            (joblib.delayed(self._compute_block)(*block) for block in blocks), total=len(blocks), n_jobs=self.n_jobs
        )
        for block, (row, col) in block_results:
            dist_mat[row : row + block.shape[0], col : col + block.shape[1]] = block

        if seqs2 is None:
            dist_mat = self.squarify(dist_mat)
        return dist_mat


class IdentityDistanceCalculator(DistanceCalculator):
    """\
    Calculates the Identity-distance between :term:`CDR3` sequences.

    The identity distance is defined as
        * `0`, if sequences are identical
        * `1`, if sequences are not identical.
    """

    def calc_dist_mat(self, seqs: Sequence[str], seqs2: Sequence[str] | None = None) -> np.ndarray:
        """More details: :meth:`DistanceCalculator.calc_dist_mat`"""
        seqs = np.asarray(seqs, dtype=object)
        seqs2 = seqs if seqs2 is None else np.asarray(seqs2, dtype=object)
        return (seqs[:, np.newaxis] != seqs2[np.newaxis, :]).astype(self.DTYPE)


@_doc_params(params=_doc_params_parallel_distance_calculator)
class LevenshteinDistanceCalculator(ParallelDistanceCalculator):
    """\
    Calculates the Levenshtein edit-distance between sequences.

    The edit distance is the total number of deletion, addition and modification
    events, each with unit cost.

    This class relies on `Levenshtein <https://github.com/rapidfuzz/Levenshtein>`_
    to calculate the distances.

    Parameters
    ----------
    {params}
    """

    def _compute_block(self, seqs1, seqs2, origin):
        if seqs2 is not None:
            # compute the full matrix
            block = np.zeros((len(seqs1), len(seqs2)), dtype=self.DTYPE)
            coord_iterator = itertools.product(enumerate(seqs1), enumerate(seqs2))
        else:
            # compute only upper triangle in this case
            block = np.zeros((len(seqs1), len(seqs1)), dtype=self.DTYPE)
            coord_iterator = itertools.combinations_with_replacement(enumerate(seqs1), r=2)

        for (row, s1), (col, s2) in coord_iterator:
            block[row, col] = levenshtein_dist(s1, s2)

        return block, origin
