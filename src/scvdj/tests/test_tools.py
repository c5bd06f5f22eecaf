import numpy as np
import numpy.testing as npt
import pandas as pd
import pandas.testing as pdt
import pytest
from mudata import MuData

import scvdj as vdj
from scvdj.tl._diversity import _inv_simpson
from scvdj.util import InvalidConfiguration


def _vdj_adata(adata):
    return adata.mod["vdj"] if isinstance(adata, MuData) else adata


def test_calc_abundance(adata_clonotype):
    res = vdj.tl.calc_abundance(adata_clonotype, inplace=False)
    pdt.assert_frame_equal(
        res,
        pd.DataFrame(
            {
                "clonotype_id": ["ct1", "ct2", "ct3", "ct4"],
                "freq": [3, 2, 1, 1],
                "pct": [300 / 7, 200 / 7, 100 / 7, 100 / 7],
                "rank": [1, 2, 3, 4],
            }
        ),
        check_dtype=False,
    )


def test_calc_abundance_groups(adata_clonotype):
    res = vdj.tl.calc_abundance(adata_clonotype, cluster_col="sample", inplace=False)
    pdt.assert_frame_equal(
        res,
        pd.DataFrame(
            {
                "sample": ["s1", "s1", "s2", "s2", "s2"],
                "clonotype_id": ["ct1", "ct2", "ct2", "ct3", "ct4"],
                "freq": [3, 1, 1, 1, 1],
                "pct": [75.0, 25.0, 100 / 3, 100 / 3, 100 / 3],
                "rank": [1, 2, 1, 2, 3],
            }
        ),
        check_dtype=False,
    )



def test_calc_cell_count(adata_clonotype):
    res = vdj.tl.calc_cell_count(adata_clonotype, "sample")
    pdt.assert_frame_equal(
        res,
        pd.DataFrame({"sample": ["s1", "s2", "s3"], "n_cells": [4, 4, 1], "frac": [4 / 9, 4 / 9, 1 / 9]}),
        check_dtype=False,
    )

    res = vdj.tl.calc_cell_count(adata_clonotype, "clonotype_id", group_col="sample")
    pdt.assert_frame_equal(
        res,
        pd.DataFrame(
            {
                "sample": ["s1", "s1", "s2", "s2", "s2"],
                "clonotype_id": ["ct1", "ct2", "ct2", "ct3", "ct4"],
                "n_cells": [3, 1, 1, 1, 1],
                "frac": [0.75, 0.25, 1 / 3, 1 / 3, 1 / 3],
            }
        ),
        check_dtype=False,
    )


def test_calc_cell_count_fill(adata_clonotype):
    res = vdj.tl.calc_cell_count(adata_clonotype, "v_gene", fill_col="sample")
    # multi-chain values are counted as they are
    assert res["v_gene"].tolist() == ["IGHV1-2", "IGHV1-2;IGKV1-5", "IGHV3-3", "IGHV4-1"]
    assert res["sample"].tolist() == ["s1", "s2", "s1", "s2"]
    assert res["n_cells"].tolist() == [2, 2, 2, 1]
    npt.assert_equal(res["frac"].values, [1, 1, 1, 1])

    res = vdj.tl.calc_cell_count(adata_clonotype, "sample", fill_col="clonotype_id")
    assert res["sample"].tolist() == ["s1", "s1", "s2", "s2", "s2"]
    npt.assert_almost_equal(res["frac"].values, [0.75, 0.25, 1 / 3, 1 / 3, 1 / 3])
    assert res.groupby("sample")["frac"].sum().tolist() == pytest.approx([1, 1])


@pytest.mark.parametrize(
    "kwargs", [{"cluster_col": "foo"}, {"cluster_col": "sample", "group_col": "sample"}]
)
def test_calc_cell_count_invalid(adata_clonotype, kwargs):
    with pytest.raises(InvalidConfiguration):
        vdj.tl.calc_cell_count(adata_clonotype, **kwargs)

def test_calc_abundance_inplace(adata_clonotype):
    vdj.tl.calc_abundance(adata_clonotype)
    obs = _vdj_adata(adata_clonotype).obs
    npt.assert_equal(obs["clone_freq"].values, [3, 3, 3, 2, 2, 1, 1, np.nan, np.nan])
    npt.assert_almost_equal(obs["clone_frac"].values, np.array([3, 3, 3, 2, 2, 1, 1, np.nan, np.nan]) / 7)

    vdj.tl.calc_abundance(adata_clonotype, cluster_col="sample", prefix="sample_")
    npt.assert_almost_equal(
        obs["sample_clone_frac"].values, [0.75, 0.75, 0.75, 0.25, 1 / 3, 1 / 3, 1 / 3, np.nan, np.nan]
    )


def test_calc_abundance_missing_column(adata_clonotype):
    with pytest.raises(InvalidConfiguration):
        vdj.tl.calc_abundance(adata_clonotype, cluster_col="foo")


@pytest.mark.parametrize(
    "method,kwargs,expected",
    [
        ("inv_simpson", {}, [1.6, 3.0, np.nan]),
        ("simpson", {}, [0.375, 2 / 3, np.nan]),
        ("shannon", {}, [-(0.75 * np.log(0.75) + 0.25 * np.log(0.25)), np.log(3), np.nan]),
        ("normalized_shannon_entropy", {}, [-(0.75 * np.log2(0.75) + 0.25 * np.log2(0.25)), 1.0, np.nan]),
        ("D50", {}, [50.0, 200 / 3, np.nan]),
        ("DXX", {"percentage": 80}, [100.0, 100.0, np.nan]),
    ],
)
def test_calc_diversity(adata_clonotype, method, kwargs, expected):
    res = vdj.tl.calc_diversity(adata_clonotype, cluster_col="sample", method=method, inplace=False, **kwargs)
    assert res.index.tolist() == ["s1", "s2", "s3"]
    npt.assert_almost_equal(res.values, expected)


def test_calc_diversity_all(adata_clonotype):
    res = vdj.tl.calc_diversity(adata_clonotype, inplace=False)
    assert res.index.tolist() == ["all"]
    npt.assert_almost_equal(res["all"], 49 / 15)


def test_calc_diversity_inplace(adata_clonotype):
    vdj.tl.calc_diversity(adata_clonotype, cluster_col="sample")
    obs = _vdj_adata(adata_clonotype).obs
    npt.assert_almost_equal(obs["inv_simpson_diversity"].values, [1.6] * 4 + [3.0] * 3 + [np.nan] * 2)

    def richness(counts):
        return len(counts)

    vdj.tl.calc_diversity(adata_clonotype, cluster_col="sample", method=richness, key_added="n_clonotypes")
    npt.assert_equal(obs["n_clonotypes"].values, [2] * 4 + [3] * 3 + [np.nan] * 2)


@pytest.mark.parametrize("method,kwargs", [("DXX", {}), ("foo", {})])
def test_calc_diversity_invalid(adata_clonotype, method, kwargs):
    with pytest.raises(InvalidConfiguration):
        vdj.tl.calc_diversity(adata_clonotype, method=method, **kwargs)


@pytest.mark.parametrize("n", range(1, 60))
def test_inv_simpson_even(n):
    # n equally abundant clonotypes
    assert _inv_simpson(np.ones(n)) == n
    assert _inv_simpson(np.full(n, 3)) == n
    assert _inv_simpson(np.array([n])) == 1


def test_calc_similarity(adata_clonotype):
    res = vdj.tl.calc_similarity(adata_clonotype, cluster_col="sample")
    assert res.index.tolist() == res.columns.tolist() == ["s1", "s2", "s3"]
    npt.assert_almost_equal(
        res.values,
        np.array(
            [
                [1.0, 0.25, np.nan],
                [0.25, 1.0, np.nan],
                [np.nan, np.nan, np.nan],
            ]
        ),
    )

    res = vdj.tl.calc_similarity(adata_clonotype, cluster_col="sample", method="dice", ref_group="s1")
    assert res.index.tolist() == ["s1"]
    assert res.columns.tolist() == ["s2", "s3"]
    npt.assert_almost_equal(res.values, [[0.4, np.nan]])


def test_calc_similarity_invalid(adata_clonotype):
    with pytest.raises(InvalidConfiguration):
        vdj.tl.calc_similarity(adata_clonotype, cluster_col="sample", method="cosine")
    with pytest.raises(InvalidConfiguration):
        vdj.tl.calc_similarity(adata_clonotype, cluster_col="sample", ref_group="s9")


def test_calc_usage(adata_clonotype):
    res = vdj.tl.calc_usage(adata_clonotype, "v_gene")
    pdt.assert_frame_equal(
        res,
        pd.DataFrame(
            {
                "v_gene": ["IGHV1-2", "IGHV3-3", "IGKV1-5", "IGHV4-1"],
                "freq": [4, 2, 2, 1],
                "pct": [400 / 7, 200 / 7, 200 / 7, 100 / 7],
            }
        ),
        check_dtype=False,
    )

    res = vdj.tl.calc_usage(adata_clonotype, "v_gene", chains="IGK")
    assert res["v_gene"].tolist() == ["IGKV1-5"]
    assert res["pct"].tolist() == [100.0]


def test_calc_usage_groups(adata_clonotype):
    res = vdj.tl.calc_usage(adata_clonotype, "v_gene", cluster_col="sample")
    pdt.assert_frame_equal(
        res,
        pd.DataFrame(
            {
                "sample": ["s1", "s1", "s2", "s2", "s2"],
                "v_gene": ["IGHV1-2", "IGHV3-3", "IGHV1-2", "IGKV1-5", "IGHV4-1"],
                "freq": [2, 2, 2, 2, 1],
                "pct": [50.0, 50.0, 200 / 3, 200 / 3, 100 / 3],
            }
        ),
        check_dtype=False,
    )


def test_calc_usage_pairs(adata_vdj):
    res = vdj.tl.calc_usage(adata_vdj, ["v_gene", "j_gene"])
    assert res.columns.tolist() == ["v_gene", "j_gene", "freq", "pct"]
    assert len(res) == 7
    assert res.iloc[0].tolist() == ["IGHV1-2", "IGHJ4", 2, 50.0]


@pytest.mark.parametrize("gene_cols", ["cdr3", ["v_gene", "v_gene"], ["v_gene", "d_gene", "j_gene"], []])
def test_calc_usage_invalid(adata_vdj, gene_cols):
    with pytest.raises(InvalidConfiguration):
        vdj.tl.calc_usage(adata_vdj, gene_cols)


def test_summarize_vdj(adata_vdj):
    vdj.tl.summarize_vdj(adata_vdj, "umis", fn="sum")
    obs = _vdj_adata(adata_vdj).obs
    npt.assert_equal(obs["sum_umis"].values.astype(float), [14, 3, np.nan, 11, 12])
    if isinstance(adata_vdj, MuData):
        npt.assert_equal(adata_vdj.obs["vdj:sum_umis"].values.astype(float), [14, 3, np.nan, 11, 12])


@pytest.mark.parametrize(
    "data_cols,fn,chains,expected",
    [
        (
            ["reads", "umis"],
            "mean",
            ["IGH"],
            {"mean_reads": [120, 50, np.nan, np.nan, 90], "mean_umis": [10, 3, np.nan, np.nan, 7]},
        ),
        ("reads", "median", None, {"median_reads": [100, 50, np.nan, 30, 65]}),
        ("cdr3", "count", None, {"count_cdr3": [2, 1, np.nan, 2, 2]}),
        ("cdr3", "count", "IGK", {"count_cdr3": [1, 0, np.nan, 0, 0]}),
        ("reads", "min", None, {"min_reads": [80, 50, np.nan, 5, 40]}),
    ],
)
def test_summarize_vdj_numeric(adata_vdj, data_cols, fn, chains, expected):
    res = vdj.tl.summarize_vdj(adata_vdj, data_cols, fn=fn, chains=chains, inplace=False)
    assert res.index.tolist() == ["c1", "c2", "c3", "c4", "c5"]
    assert res.columns.tolist() == list(expected)
    for col, values in expected.items():
        npt.assert_almost_equal(res[col].values.astype(float), values)


def test_summarize_vdj_strings(adata_vdj):
    res = vdj.tl.summarize_vdj(adata_vdj, ["chains", "cdr3"], fn="unique", inplace=False)
    assert res["unique_chains"].tolist()[3] == "TRA;TRB"
    assert res["unique_cdr3"].tolist()[3] == "CAVSW;CASSLG"
    assert pd.isnull(res["unique_chains"]["c3"])

    res = vdj.tl.summarize_vdj(adata_vdj, "cdr3", fn="max", inplace=False)
    assert res["max_cdr3"]["c1"] == "CQQYNSW"

    def first(values):
        return values[0]

    res = vdj.tl.summarize_vdj(adata_vdj, "v_gene", fn=first, inplace=False)
    assert res["first_v_gene"].tolist()[:2] == ["IGHV1-2", "IGHV1-2"]


@pytest.mark.parametrize(
    "data_cols,fn",
    [
        ("cdr3", "mean"),
        ("reads", "foo"),
        ("sample", "count"),
        ([], "count"),
    ],
)
def test_summarize_vdj_invalid(adata_vdj, data_cols, fn):
    with pytest.raises(InvalidConfiguration):
        vdj.tl.summarize_vdj(adata_vdj, data_cols, fn=fn)


def test_summarize_chains(adata_vdj):
    res = vdj.tl.summarize_chains(adata_vdj, "umis", fn="sum", chain_col="chains", include_cols="sample")
    assert res.columns.tolist() == ["cell_id", "chains", "sample", "umis"]
    assert res["cell_id"].tolist() == ["c1", "c1", "c2", "c4", "c4", "c5", "c5"]
    assert res["chains"].tolist() == ["IGH", "IGK", "IGH", "TRA", "TRB", "IGH", "IGL"]
    assert res["sample"].tolist() == ["s1", "s1", "s1", "s2", "s2", "s2", "s2"]
    assert res["umis"].tolist() == [10, 4, 3, 2, 9, 7, 5]

    res = vdj.tl.summarize_chains(adata_vdj, ["reads", "umis"], fn="max")
    assert res.columns.tolist() == ["cell_id", "reads", "umis"]
    assert res["cell_id"].tolist() == ["c1", "c2", "c4", "c5"]
    assert res["reads"].tolist() == [120, 50, 60, 90]

    with pytest.raises(InvalidConfiguration):
        vdj.tl.summarize_chains(adata_vdj, "umis", include_cols="foo")
