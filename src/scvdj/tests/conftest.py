import pandas as pd
import pytest

from .util import _make_adata


@pytest.fixture(params=[False, True], ids=["AnnData", "MuData"])
def adata_vdj(request):
    obs = pd.DataFrame(
        # fmt: off
        [
            ["c1", "IGH;IGK", "CARDYW;CQQYNSW", "IGHV1-2;IGKV1-5", "IGHJ4;IGKJ1", "IGHM;IGKC", "120;80", "10;4", "True;True", "ct1", "s1"],
            ["c2", "IGH", "CARDYW", "IGHV1-2", "IGHJ4", "nan", "50", "3", "True", "ct1", "s1"],
            ["c3", "nan", "nan", "nan", "nan", "nan", "nan", "nan", "nan", "nan", "s2"],
            ["c4", "TRA;TRB;TRB", "CAVSW;CASSLG;nan", "TRAV1;TRBV5;TRBV6", "TRAJ1;TRBJ2;TRBJ2", "TRAC;TRBC1;nan", "30;60;5", "2;8;1", "True;True;False", "ct2", "s2"],
            ["c5", "IGH;IGL", "CARDYF;CQSYDW", "IGHV3-3;IGLV2-1", "IGHJ4;IGLJ2", "IGHG1;IGLC2", "90;40", "7;5", "True;False", "ct3", "s2"],
        ],
        # fmt: on
        columns=["cell_id", "chains", "cdr3", "v_gene", "j_gene", "c_gene", "reads", "umis", "productive", "clonotype_id", "sample"],
    ).set_index("cell_id")
    return _make_adata(obs, request.param)


@pytest.fixture(params=[False, True], ids=["AnnData", "MuData"])
def adata_filter(request):
    obs = pd.DataFrame(
        [
            ["c1", "IGH;IGK", "CARDYW;CQQYNSW"],
            ["c2", "IGH", "CARDYW"],
            ["c3", "nan", "nan"],
        ],
        columns=["cell_id", "chains", "cdr3"],
    ).set_index("cell_id")
    return _make_adata(obs, request.param)


@pytest.fixture(params=[False, True], ids=["AnnData", "MuData"])
def adata_cluster(request):
    """Two groups of B cells with similar sequences, one T cell and one cell without V(D)J data"""
    obs = pd.DataFrame(
        # fmt: off
        [
            ["c1", "IGH;IGK", "CARDYW;CQQYNSW"],
            ["c2", "IGH;IGK", "CARDYW;CQQYNSW"],
            ["c3", "IGH;IGK", "CARDFW;CQQYNSW"],
            ["c4", "IGH;IGL", "CTTTTTGGGW;CSSYAGSNNLVF"],
            ["c5", "IGH;IGL", "CTTTTTGGGW;CSSYAGSNNLVF"],
            ["c6", "IGH;IGL", "CTTTTTGGAW;CSSYAGSNNLVF"],
            ["c7", "TRA;TRB", "CAVRDSNYQLIW;CASSLGQAYEQYF"],
            ["c8", "nan", "nan"],
        ],
        # fmt: on
        columns=["cell_id", "chains", "cdr3"],
    ).set_index("cell_id")
    return _make_adata(obs, request.param)


@pytest.fixture(params=[False, True], ids=["AnnData", "MuData"])
def adata_clonotype(request):
    obs = pd.DataFrame(
        # fmt: off
        [
            ["c1", "IGH", "IGHV1-2", "ct1", "s1"],
            ["c2", "IGH", "IGHV1-2", "ct1", "s1"],
            ["c3", "IGH", "IGHV3-3", "ct1", "s1"],
            ["c4", "IGH", "IGHV3-3", "ct2", "s1"],
            ["c5", "IGH;IGK", "IGHV1-2;IGKV1-5", "ct2", "s2"],
            ["c6", "IGH;IGK", "IGHV1-2;IGKV1-5", "ct3", "s2"],
            ["c7", "IGH", "IGHV4-1", "ct4", "s2"],
            ["c8", "nan", "nan", "nan", "s2"],
            ["c9", "nan", "nan", "nan", "s3"],
        ],
        # fmt: on
        columns=["cell_id", "chains", "v_gene", "clonotype_id", "sample"],
    ).set_index("cell_id")
    return _make_adata(obs, request.param)
