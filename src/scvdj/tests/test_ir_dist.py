import numpy as np
import numpy.testing as npt
import pandas as pd
import pandas.testing as pdt
import pytest
from Levenshtein import distance as levenshtein_dist
from mudata import MuData

import scvdj as vdj
from scvdj.ir_dist import _canonical_key, knn_membership, snn_graph
from scvdj.ir_dist.metrics import IdentityDistanceCalculator, LevenshteinDistanceCalculator
from scvdj.util import InvalidConfiguration, _is_symmetric

from .util import _make_adata


def test_identity_dist():
    identity = IdentityDistanceCalculator()
    res = identity.calc_dist_mat(["ARS", "ARS", "RSA"])
    npt.assert_equal(res, np.array([[0, 0, 1], [0, 0, 1], [1, 1, 0]]))
    assert res.dtype == np.float64

    res = identity.calc_dist_mat(["ARS", "RSA"], ["RSA", "ARS", "XXX"])
    npt.assert_equal(res, np.array([[1, 0, 1], [0, 1, 1]]))


def test_levenshtein_dist():
    levenshtein = LevenshteinDistanceCalculator(n_jobs=1)
    res = levenshtein.calc_dist_mat(["A", "AA", "AAA", "AAR"])
    npt.assert_equal(
        res,
        np.array(
            [
                [0, 1, 2, 2],
                [1, 0, 1, 1],
                [2, 1, 0, 1],
                [2, 1, 1, 0],
            ]
        ),
    )
    assert res.dtype == np.float64

    res = levenshtein.calc_dist_mat(["A", "AA"], ["AAA", "AR", "A"])
    npt.assert_equal(res, np.array([[2, 1, 0], [1, 1, 1]]))

    assert levenshtein.calc_dist_mat([]).shape == (0, 0)


@pytest.mark.parametrize("n_jobs", [1, 2])
def test_levenshtein_dist_blocks(n_jobs):
    """Sequences are split into multiple blocks"""
    rng = np.random.default_rng(42)
    seqs = np.unique(["".join(rng.choice(list("ACDEFGHIK"), size=rng.integers(3, 8))) for _ in range(130)])
    seqs2 = seqs[:70]
    levenshtein = LevenshteinDistanceCalculator(n_jobs=n_jobs)

    res = levenshtein.calc_dist_mat(seqs)
    expected = np.array([[levenshtein_dist(s1, s2) for s2 in seqs] for s1 in seqs])
    npt.assert_equal(res, expected)
    assert _is_symmetric(res)

    res = levenshtein.calc_dist_mat(seqs, seqs2)
    expected = np.array([[levenshtein_dist(s1, s2) for s2 in seqs2] for s1 in seqs])
    npt.assert_equal(res, expected)


def test_block_iter():
    b1 = list(LevenshteinDistanceCalculator._block_iter(["A", "B", "C", "D", "E"], block_size=2))
    assert [origin for _, _, origin in b1] == [(0, 0), (0, 2), (0, 4), (2, 2), (2, 4), (4, 4)]
    assert b1[0][1] is None
    assert b1[1] == (["A", "B"], ["C", "D"], (0, 2))

    b2 = list(LevenshteinDistanceCalculator._block_iter(["A", "B", "C"], ["D", "E"], block_size=2))
    assert [origin for _, _, origin in b2] == [(0, 0), (2, 0)]


def test_sequence_dist():
    res = vdj.ir_dist.sequence_dist(["AAA", "ARA", "AAA"], n_jobs=1)
    npt.assert_equal(res, np.array([[0, 1, 0], [1, 0, 1], [0, 1, 0]]))

    res = vdj.ir_dist.sequence_dist(["AAA", "ARA"], ["ARA", "AAA", "ARA"], metric="identity")
    npt.assert_equal(res, np.array([[1, 0, 1], [0, 1, 0]]))

    with pytest.raises(InvalidConfiguration):
        vdj.ir_dist.sequence_dist(["AAA"], metric="hamming")


def test_canonical_key():
    key, types = _canonical_key(["TRB", "TRA", "TRB", "foo"], ["CB2", "CA", "CB1", "X"], None)
    assert key == "TRA:CA_TRB:CB1_TRB:CB2_foo:X"
    assert types == ("TRA", "TRB", "foo")

    # chains without sequence and excluded chain types are skipped
    key, types = _canonical_key(["IGK", "IGH", "IGL"], ["CQQW", "CARW", None], ["IGH", "IGL"])
    assert key == "IGH:CARW"
    assert types == ("IGH",)

    assert _canonical_key([], [], None) == ("", ())


def test_canonical_keys(adata_vdj):
    keys = vdj.ir_dist.canonical_keys(adata_vdj)
    assert keys.index.tolist() == ["c1", "c2", "c3", "c4", "c5"]
    assert keys["key"].tolist() == [
        "IGH:CARDYW_IGK:CQQYNSW",
        "IGH:CARDYW",
        None,
        "TRA:CAVSW_TRB:CASSLG",
        "IGH:CARDYF_IGL:CQSYDW",
    ]
    assert keys["chain_types"].tolist() == [("IGH", "IGK"), ("IGH",), (), ("TRA", "TRB"), ("IGH", "IGL")]

    keys = vdj.ir_dist.canonical_keys(adata_vdj, chains=["IGK", "IGL"])
    assert keys["key"].tolist() == ["IGK:CQQYNSW", None, None, None, "IGL:CQSYDW"]


def test_vdj_dist(adata_vdj):
    dist = vdj.pp.vdj_dist(adata_vdj, inplace=False, n_jobs=1)
    assert dist.index.tolist() == dist.columns.tolist() == ["c1", "c2", "c4", "c5"]
    keys = ["IGH:CARDYW_IGK:CQQYNSW", "IGH:CARDYW", "TRA:CAVSW_TRB:CASSLG", "IGH:CARDYF_IGL:CQSYDW"]
    expected = np.array([[levenshtein_dist(k1, k2) for k2 in keys] for k1 in keys], dtype=float)
    # the T cell does not share a chain type with any B cell
    expected[2, [0, 1, 3]] = np.nan
    expected[[0, 1, 3], 2] = np.nan
    npt.assert_equal(dist.values, expected)



def test_detection_order_invariance():
    chains = [["IGH", "IGK"], ["IGK", "IGH"], ["TRB", "TRA"], ["IGL", "IGH"]]
    cdr3 = [["CARDYW", "CQQYNSW"], ["CQQYSW", "CARDYF"], ["CASSLG", "CAVSW"], ["CQSYDW", "CARDYW"]]

    def _adata(reverse):
        rows = []
        for i, (c, s) in enumerate(zip(chains, cdr3, strict=True)):
            if reverse:
                c, s = c[::-1], s[::-1]
            rows.append([f"c{i + 1}", ";".join(c), ";".join(s)])
        return _make_adata(pd.DataFrame(rows, columns=["cell_id", "chains", "cdr3"]).set_index("cell_id"))

    adata1, adata2 = _adata(False), _adata(True)
    keys1 = vdj.ir_dist.canonical_keys(adata1)
    pdt.assert_frame_equal(keys1, vdj.ir_dist.canonical_keys(adata2))
    assert keys1.loc["c2", "key"] == "IGH:CARDYF_IGK:CQQYSW"
    pdt.assert_frame_equal(
        vdj.pp.vdj_dist(adata1, inplace=False, n_jobs=1),
        vdj.pp.vdj_dist(adata2, inplace=False, n_jobs=1),
    )


def test_vdj_dist_chain_subset():
    obs = pd.DataFrame(
        [
            ["c1", "IGH;IGK", "CARS;CQQS"],
            ["c2", "IGH;IGK", "CART;CQQT"],
            ["c3", "nan", "nan"],
        ],
        columns=["cell_id", "chains", "cdr3"],
    ).set_index("cell_id")
    adata = _make_adata(obs)
    keys = vdj.ir_dist.canonical_keys(adata, chains="IGH")
    assert keys["key"].tolist() == ["IGH:CARS", "IGH:CART", None]

    dist = vdj.pp.vdj_dist(adata, chains="IGH", inplace=False, n_jobs=1)
    assert dist.index.tolist() == ["c1", "c2"]
    npt.assert_equal(dist.values, np.array([[0, 1], [1, 0]]))

    labels, _ = vdj.tl.cluster_vdj(adata, chains="IGH", k=1, inplace=False, n_jobs=1)
    assert labels.notnull().tolist() == [True, True, False]

def test_vdj_dist_inplace(adata_vdj):
    vdj.pp.vdj_dist(adata_vdj, chains="IGH", metric="identity", prefix="igh_")
    adata = adata_vdj.mod["vdj"] if isinstance(adata_vdj, MuData) else adata_vdj
    dist = adata.uns["igh_vdj_dist"]
    assert dist.index.tolist() == ["c1", "c2", "c5"]
    npt.assert_equal(dist.values, np.array([[0, 0, 1], [0, 0, 1], [1, 1, 0]]))

    vdj.pp.vdj_dist(adata_vdj, chains="IGH", metric=IdentityDistanceCalculator(), key_added="my_dist")
    npt.assert_equal(adata.uns["my_dist"].values, dist.values)


def test_vdj_dist_invalid(adata_vdj):
    with pytest.raises(InvalidConfiguration):
        vdj.pp.vdj_dist(adata_vdj, metric="hamming")
    with pytest.raises(InvalidConfiguration):
        vdj.pp.vdj_dist(adata_vdj, data_col="sample")
    with pytest.raises(InvalidConfiguration):
        vdj.pp.vdj_dist(adata_vdj, chains=["IGX"])


def test_vdj_dist_no_keys(adata_vdj):
    dist = vdj.pp.vdj_dist(adata_vdj, chains="TRD", inplace=False, n_jobs=1)
    assert dist.shape == (0, 0)


def test_knn_membership():
    dist = np.array(
        [
            [0, 1, 2, 10],
            [1, 0, 1, 9],
            [2, 1, 0, 8],
            [10, 9, 8, 0],
        ],
        dtype=float,
    )
    npt.assert_equal(
        knn_membership(dist, 1).toarray(),
        np.array(
            [
                [1, 1, 0, 0],
                # tie between cell 0 and 2 is broken by cell order
                [1, 1, 0, 0],
                [0, 1, 1, 0],
                [0, 0, 1, 1],
            ]
        ),
    )

    dist[3, :3] = dist[:3, 3] = np.nan
    res = knn_membership(dist, 2).toarray()
    npt.assert_equal(res[3], [0, 0, 0, 1])
    assert res[:3, 3].sum() == 0


def test_snn_graph():
    dist = np.array(
        [
            [0, 1, 2, 10],
            [1, 0, 1, 9],
            [2, 1, 0, 8],
            [10, 9, 8, 0],
        ],
        dtype=float,
    )
    graph = snn_graph(dist, k=1)
    npt.assert_equal(
        graph.toarray(),
        np.array(
            [
                [0, 2, 0, 0],
                [2, 0, 1, 0],
                [0, 1, 0, 1],
                [0, 0, 1, 0],
            ]
        ),
    )
    assert _is_symmetric(graph)


def test_snn_graph_clamp_k():
    dist = np.array([[0, 1, 5], [1, 0, 3], [5, 3, 0]], dtype=float)
    # all cells are neighbors of each other
    npt.assert_equal(snn_graph(dist, k=10).toarray(), np.array([[0, 3, 3], [3, 0, 3], [3, 3, 0]]))
    assert snn_graph(np.zeros((1, 1)), k=10).nnz == 0


def test_snn_graph_nan():
    dist = np.array([[0, 1, np.nan], [1, 0, np.nan], [np.nan, np.nan, 0]])
    npt.assert_equal(snn_graph(dist, k=2).toarray(), np.array([[0, 2, 0], [2, 0, 0], [0, 0, 0]]))
