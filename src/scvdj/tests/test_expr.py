import pickle

import numpy as np
import pytest

from scvdj.expr import ChainVector, ExpressionContext, parse_expression
from scvdj.util import DataHandler, InvalidConfiguration, InvalidExpression, TypeMismatch, UnknownIdentifier

_COLUMNS = {
    "chains": ("str", True),
    "cdr3": ("str", True),
    "reads": ("num", True),
    "productive": ("bool", True),
    "sample": ("str", False),
    "score": ("num", False),
}

_ALIASES = {"chains": "chains", "seqs": "cdr3"}


def _resolver(name):
    try:
        kind, is_vector = _COLUMNS[name]
    except KeyError:
        raise UnknownIdentifier(name) from None
    return name, kind, is_vector


@pytest.fixture
def env():
    return {
        "chains": ChainVector(["IGH", "IGK"]),
        "cdr3": ChainVector(["CARDYW", None]),
        "reads": ChainVector([120, 80]),
        "productive": ChainVector([True, False]),
        "sample": "s1",
        "score": 2,
    }


@pytest.mark.parametrize(
    "expr,expected",
    [
        ("chains == 'IGH'", ChainVector([True, False])),
        ("chains != 'IGH'", ChainVector([False, True])),
        ("'IGH' in chains", True),
        ("'TRA' in chains", False),
        ("'TRA' not in chains", True),
        ("'IGH' in chains and 'IGK' in chains", True),
        ("chains in ['IGH', 'TRB']", ChainVector([True, False])),
        ("any(chains == 'IGK')", True),
        ("all(productive)", False),
        ("length(chains)", 2),
        ("len(cdr3)", 2),
        ("sum(reads)", 200),
        ("sum(productive)", 1),
        ("mean(reads)", 100.0),
        ("min(reads)", 80),
        ("max(cdr3)", "CARDYW"),
        ("nchar(cdr3)", ChainVector([6, None])),
        ("is_na(cdr3)", ChainVector([False, True])),
        ("unique(chains)", ChainVector(["IGH", "IGK"])),
        ("reads[0]", 120),
        ("reads[5]", None),
        ("cdr3[-1]", None),
        ("reads * 2 + 1", ChainVector([241, 161])),
        ("reads / 0", ChainVector([None, None])),
        ("score / 0", None),
        ("score // 2", 1),
        ("score % 2", 0),
        ("-score", -2),
        ("10 < reads < 100", ChainVector([False, True])),
        ("reads >= 80", ChainVector([True, True])),
        ("cdr3 == None", ChainVector([False, True])),
        ("score > None", False),
        ("'s' in sample", True),
        ("'big' if score > 1 else 'small'", "big"),
        ("not productive", False),
        ("sample == 's1' or score > 10", True),
        (".chains == 'IGK'", ChainVector([False, True])),
        ("'.seqs' in .seqs", False),
    ],
)
def test_evaluate(env, expr, expected):
    res = parse_expression(expr, _resolver, aliases=_ALIASES).evaluate(env)
    assert res == expected
    assert type(res) is type(expected)


@pytest.mark.parametrize(
    "expr,exception",
    [
        ("cdr3 + 1", TypeMismatch),
        ("cdr3 > 5", TypeMismatch),
        ("-cdr3", TypeMismatch),
        ("sum(cdr3)", TypeMismatch),
        ("nchar(reads)", TypeMismatch),
        ("length(chains, cdr3)", TypeMismatch),
        ("score[0]", TypeMismatch),
        ("foo == 1", UnknownIdentifier),
        ("bar(chains)", UnknownIdentifier),
        (".foo == 1", UnknownIdentifier),
        ("chains ==", InvalidExpression),
        ("", InvalidExpression),
        ("lambda x: x", InvalidExpression),
        ("score.real", InvalidExpression),
        ("reads[score]", InvalidExpression),
        ("[chains]", InvalidExpression),
        ("chains is None", InvalidExpression),
    ],
)
def test_parse_errors(expr, exception):
    with pytest.raises(exception):
        parse_expression(expr, _resolver, aliases=_ALIASES)


def test_invalid_expression_is_invalid_configuration():
    with pytest.raises(InvalidConfiguration):
        parse_expression("1 +", _resolver)


def test_predicate(env):
    expression = parse_expression("chains == 'IGK'", _resolver, predicate=True)
    assert expression.kind == "bool"
    assert not expression.is_vector
    assert expression.evaluate(env) is True

    with pytest.raises(TypeMismatch):
        parse_expression("sum(reads)", _resolver, predicate=True)


def test_vector_length_mismatch(env):
    env["cdr3"] = ChainVector(["CARDYW"])
    expression = parse_expression("chains == cdr3", _resolver)
    with pytest.raises(TypeMismatch):
        expression.evaluate(env)


def test_expression_properties():
    expression = parse_expression("'IGH' in .chains and sum(reads) > score", _resolver, aliases=_ALIASES)
    assert expression.identifiers == {"chains", "reads", "score"}
    assert expression.kind == "bool"
    assert not expression.is_vector

    expression = parse_expression("nchar(.seqs)", _resolver, aliases=_ALIASES)
    assert expression.identifiers == {"cdr3"}
    assert expression.kind == "num"
    assert expression.is_vector


def test_expression_pickle(env):
    """Expressions are sent to worker processes for parallel evaluation"""
    expression = parse_expression("-mean(reads) < 0 and 'IGH' in chains", _resolver)
    assert pickle.loads(pickle.dumps(expression)).evaluate(env) is True


def test_expression_context_resolve(adata_vdj):
    context = ExpressionContext(DataHandler(adata_vdj, "vdj"))
    assert context.resolve("cdr3") == ("cdr3", "str", True)
    assert context.resolve("reads") == ("reads", "num", True)
    assert context.resolve("productive") == ("productive", "bool", True)
    assert context.resolve("sample") == ("sample", "str", False)
    # per-chain column that is not available
    with pytest.raises(UnknownIdentifier, match="d_gene"):
        context.resolve("d_gene")
    with pytest.raises(UnknownIdentifier):
        context.resolve("foo")

    context.stage("sample", [1, 2, 3, 4, 5], "num")
    assert context.resolve("sample") == ("sample", "num", False)


def test_expression_context_invalid_columns(adata_vdj):
    params = DataHandler(adata_vdj, "vdj")
    with pytest.raises(InvalidConfiguration):
        ExpressionContext(params, data_col="sample")
    with pytest.raises(InvalidConfiguration):
        ExpressionContext(params, chain_col="foo")


def test_expression_context_evaluate(adata_vdj):
    params = DataHandler(adata_vdj, "vdj")
    context = ExpressionContext(params)
    expression = context.parse("sum(umis)")
    assert context.evaluate(expression) == [14, 3, 0, 11, 12]
    assert context.evaluate(expression, mask=params.has_vdj) == [14, 3, None, 11, 12]

    expression = context.parse(".seqs", predicate=False)
    assert context.evaluate(expression)[3] == ChainVector(["CAVSW", "CASSLG", None])

    expression = context.parse("sample == 's2' and 'TRB' in chains", predicate=True)
    assert context.evaluate(expression) == [False, False, False, True, False]


def test_expression_context_stage_vector(adata_vdj):
    params = DataHandler(adata_vdj, "vdj")
    context = ExpressionContext(params)
    context.stage("cdr3_len", [[6, 7], [6], None, [5, 6, None], [6, 6]], "num", is_vector=True)
    expression = context.parse("max(cdr3_len)")
    assert context.evaluate(expression) == [7, 6, None, 6, 6]


def test_expression_context_parallel(adata_vdj):
    context = ExpressionContext(DataHandler(adata_vdj, "vdj"))
    expression = context.parse("mean(reads) if length(chains) > 1 else -1")
    sequential = context.evaluate(expression)
    parallel = context.evaluate(expression, n_jobs=2, chunksize=2)
    assert parallel == sequential
    np.testing.assert_almost_equal(sequential, [100.0, -1, -1, 95 / 3, 65.0])
