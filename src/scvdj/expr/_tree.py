"""Typed expression tree evaluated against the bindings of a single cell.

Values are either scalars (plain python objects, `None` for missing values) or
:class:`ChainVector` objects holding one value per chain. Every node knows its
`kind` (the type of its values) and whether it produces a vector. Both are
determined when the tree is built, so that type errors surface before any cell
is evaluated.
"""

import operator
import statistics
from collections.abc import Callable, Mapping, Sequence
from functools import partial
from typing import Any

from scvdj.util._exceptions import TypeMismatch

NUM = "num"
STR = "str"
BOOL = "bool"
ANY = "any"

_NUMERIC = (NUM, BOOL)


class ChainVector(tuple):
    """Values of a per-chain column for a single cell, in chain order."""

    __slots__ = ()

    def __repr__(self):
        return f"ChainVector({list(self)!r})"


def kind_of_value(value: Any) -> str:
    if isinstance(value, bool):
        return BOOL
    if isinstance(value, int | float):
        return NUM
    if isinstance(value, str):
        return STR
    return ANY


def kind_of_type(elem_type: type) -> str:
    return {bool: BOOL, int: NUM, float: NUM, str: STR}.get(elem_type, ANY)


def _compatible(left: str, right: str) -> bool:
    if ANY in (left, right):
        return True
    if left in _NUMERIC and right in _NUMERIC:
        return True
    return left == right


def _is_seq(value: Any) -> bool:
    """ChainVectors and list literals"""
    return isinstance(value, tuple)


def _broadcast(fn: Callable[[Any, Any], Any], left: Any, right: Any) -> Any:
    """Apply `fn` element-wise if any of the operands is a ChainVector"""
    left_vec, right_vec = isinstance(left, ChainVector), isinstance(right, ChainVector)
    if left_vec and right_vec:
        if len(left) != len(right):
            raise TypeMismatch(f"Can't combine per-chain values of different length ({len(left)} and {len(right)}).")
        return ChainVector(fn(a, b) for a, b in zip(left, right, strict=True))
    if left_vec:
        return ChainVector(fn(a, right) for a in left)
    if right_vec:
        return ChainVector(fn(left, b) for b in right)
    return fn(left, right)


def _map(fn: Callable[[Any], Any], value: Any) -> Any:
    if isinstance(value, ChainVector):
        return ChainVector(fn(v) for v in value)
    return fn(value)


def truthy(value: Any) -> bool:
    """Boolean value of a scalar. Missing values are false."""
    return value is not None and bool(value)


class Node:
    """Base class of all expression nodes."""

    kind: str = ANY
    is_vector: bool = False

    def evaluate(self, env: Mapping[str, Any]) -> Any:
        raise NotImplementedError

    def children(self) -> Sequence["Node"]:
        return ()

    def identifiers(self) -> set[str]:
        """Names of all identifiers referenced in the expression"""
        res = set()
        for child in self.children():
            res |= child.identifiers()
        return res


class Literal(Node):
    def __init__(self, value: Any):
        self.value = value
        self.kind = kind_of_value(value)

    def evaluate(self, env):
        return self.value

    def __repr__(self):
        return repr(self.value)


class ListLiteral(Node):
    """A list or tuple of constants, used as the right-hand side of `in`."""

    def __init__(self, values: Sequence[Any]):
        self.value = tuple(values)
        kinds = {kind_of_value(v) for v in self.value if v is not None}
        self.kind = kinds.pop() if len(kinds) == 1 else ANY

    def evaluate(self, env):
        return self.value

    def __repr__(self):
        return repr(list(self.value))


class Identifier(Node):
    def __init__(self, name: str, kind: str, is_vector: bool):
        self.name = name
        self.kind = kind
        self.is_vector = is_vector

    def evaluate(self, env):
        return env[self.name]

    def identifiers(self):
        return {self.name}

    def __repr__(self):
        return self.name


_COMPARISONS = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def _compare(op: str, a: Any, b: Any) -> bool:
    if a is None or b is None:
        if op == "==":
            return a is b
        if op == "!=":
            return a is not b
        return False
    try:
        return bool(_COMPARISONS[op](a, b))
    except TypeError:
        raise TypeMismatch(f"Can't compare `{a!r}` and `{b!r}` with `{op}`.") from None


class Compare(Node):
    def __init__(self, op: str, left: Node, right: Node):
        if not _compatible(left.kind, right.kind):
            raise TypeMismatch(f"Can't compare {left.kind} values (`{left}`) with {right.kind} values (`{right}`).")
        if op in ("<", "<=", ">", ">=") and BOOL in (left.kind, right.kind) and STR in (left.kind, right.kind):
            raise TypeMismatch(f"`{op}` is not defined between `{left}` and `{right}`.")
        self.op = op
        self.left = left
        self.right = right
        self.kind = BOOL
        self.is_vector = left.is_vector or right.is_vector

    def evaluate(self, env):
        return _broadcast(partial(_compare, self.op), self.left.evaluate(env), self.right.evaluate(env))

    def children(self):
        return (self.left, self.right)

    def __repr__(self):
        return f"({self.left} {self.op} {self.right})"


def _both(a: Any, b: Any) -> bool:
    return truthy(a) and truthy(b)


class ElementwiseAnd(Node):
    """Element-wise conjunction. Used for chained comparisons like `1 < reads < 10`."""

    def __init__(self, operands: Sequence[Node]):
        self.operands = list(operands)
        self.kind = BOOL
        self.is_vector = any(o.is_vector for o in self.operands)

    def evaluate(self, env):
        res = self.operands[0].evaluate(env)
        for o in self.operands[1:]:
            res = _broadcast(_both, res, o.evaluate(env))
        return res

    def children(self):
        return self.operands

    def __repr__(self):
        return "(" + " & ".join(map(repr, self.operands)) + ")"


class Membership(Node):
    """`item in container` / `item not in container`.

    * scalar in ChainVector: set membership, reduces to a scalar
    * ChainVector in list/ChainVector: element-wise membership
    * scalar string in scalar string: substring test
    """

    def __init__(self, item: Node, container: Node, negate: bool = False):
        if not _compatible(item.kind, container.kind):
            raise TypeMismatch(
                f"Can't test membership of {item.kind} values (`{item}`) in {container.kind} values (`{container}`)."
            )
        self.item = item
        self.container = container
        self.negate = negate
        self.kind = BOOL
        self.is_vector = item.is_vector

    def _contains(self, item, container) -> bool:
        if container is None:
            res = False
        elif _is_seq(container):
            res = item in container
        elif isinstance(item, str) and isinstance(container, str):
            res = item in container
        else:
            res = item == container
        return not res if self.negate else res

    def evaluate(self, env):
        item = self.item.evaluate(env)
        container = self.container.evaluate(env)
        if isinstance(item, ChainVector):
            haystack = container if _is_seq(container) else (container,)
            return ChainVector(self._contains(v, haystack) for v in item)
        return self._contains(item, container)

    def children(self):
        return (self.item, self.container)

    def __repr__(self):
        return f"({self.item} {'not in' if self.negate else 'in'} {self.container})"


_ARITHMETIC = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": operator.truediv,
    "//": operator.floordiv,
    "%": operator.mod,
}


def _arithmetic(op: str, a: Any, b: Any) -> Any:
    if a is None or b is None:
        return None
    try:
        return _ARITHMETIC[op](a, b)
    except ZeroDivisionError:
        return None
    except TypeError:
        raise TypeMismatch(f"`{op}` is not defined between `{a!r}` and `{b!r}`.") from None


class BinOp(Node):
    def __init__(self, op: str, left: Node, right: Node):
        for operand in (left, right):
            if operand.kind not in (NUM, BOOL, ANY):
                raise TypeMismatch(f"`{op}` requires numeric values, but `{operand}` is of kind {operand.kind}.")
        self.op = op
        self.left = left
        self.right = right
        self.kind = NUM
        self.is_vector = left.is_vector or right.is_vector

    def evaluate(self, env):
        return _broadcast(partial(_arithmetic, self.op), self.left.evaluate(env), self.right.evaluate(env))

    def children(self):
        return (self.left, self.right)

    def __repr__(self):
        return f"({self.left} {self.op} {self.right})"


class Negative(Node):
    def __init__(self, operand: Node, sign: int = -1):
        if operand.kind not in (NUM, BOOL, ANY):
            raise TypeMismatch(f"Unary `-` requires numeric values, but `{operand}` is of kind {operand.kind}.")
        self.operand = operand
        self.sign = sign
        self.kind = NUM
        self.is_vector = operand.is_vector

    def evaluate(self, env):
        return _map(lambda v: None if v is None else self.sign * v, self.operand.evaluate(env))

    def children(self):
        return (self.operand,)

    def __repr__(self):
        return f"-{self.operand}" if self.sign < 0 else f"+{self.operand}"


class Not(Node):
    """Boolean negation. Requires a scalar operand."""

    def __init__(self, operand: Node):
        assert not operand.is_vector, "vector operands need to be reduced first"
        self.operand = operand
        self.kind = BOOL

    def evaluate(self, env):
        return not truthy(self.operand.evaluate(env))

    def children(self):
        return (self.operand,)

    def __repr__(self):
        return f"not {self.operand}"


class BoolOp(Node):
    """`and` / `or`. Requires scalar operands."""

    def __init__(self, op: str, operands: Sequence[Node]):
        assert not any(o.is_vector for o in operands), "vector operands need to be reduced first"
        self.op = op
        self.operands = list(operands)
        self.kind = BOOL

    def evaluate(self, env):
        if self.op == "and":
            return all(truthy(o.evaluate(env)) for o in self.operands)
        return any(truthy(o.evaluate(env)) for o in self.operands)

    def children(self):
        return self.operands

    def __repr__(self):
        return "(" + f" {self.op} ".join(map(repr, self.operands)) + ")"


class IfExp(Node):
    def __init__(self, test: Node, body: Node, orelse: Node):
        assert not test.is_vector, "vector operands need to be reduced first"
        self.test = test
        self.body = body
        self.orelse = orelse
        self.kind = body.kind if body.kind == orelse.kind else ANY
        self.is_vector = body.is_vector or orelse.is_vector

    def evaluate(self, env):
        if truthy(self.test.evaluate(env)):
            return self.body.evaluate(env)
        return self.orelse.evaluate(env)

    def children(self):
        return (self.test, self.body, self.orelse)

    def __repr__(self):
        return f"({self.body} if {self.test} else {self.orelse})"


class Subscript(Node):
    """Access a single chain by position, e.g. `cdr3[0]`. Out-of-range positions are missing."""

    def __init__(self, value: Node, index: int):
        if not value.is_vector:
            raise TypeMismatch(f"Only per-chain values can be indexed, but `{value}` is a scalar.")
        self.value = value
        self.index = index
        self.kind = value.kind

    def evaluate(self, env):
        values = self.value.evaluate(env)
        try:
            return values[self.index]
        except IndexError:
            return None

    def children(self):
        return (self.value,)

    def __repr__(self):
        return f"{self.value}[{self.index}]"


# ---------------------------------------------------------------------------
# functions
# ---------------------------------------------------------------------------


def _values(x) -> tuple:
    """Treat scalars as sequences of length 1 (0 if missing)"""
    if _is_seq(x):
        return x
    return () if x is None else (x,)


def _present(x) -> list:
    return [v for v in _values(x) if v is not None]


def _fn_all(x):
    return all(truthy(v) for v in _values(x))


def _fn_any(x):
    return any(truthy(v) for v in _values(x))


def _fn_unique(x):
    return ChainVector(dict.fromkeys(_values(x)))


def _fn_length(x):
    return len(_values(x))


def _fn_sum(x):
    return sum(_present(x))


def _fn_mean(x):
    values = _present(x)
    return statistics.fmean(values) if len(values) else None


def _fn_min(x):
    values = _present(x)
    return min(values) if len(values) else None


def _fn_max(x):
    values = _present(x)
    return max(values) if len(values) else None


def _fn_nchar(x):
    return _map(lambda v: None if v is None else len(v), x)


def _fn_is_na(x):
    return _map(lambda v: v is None, x)


class Function:
    """Specification of a function that can be called in expressions.

    Parameters
    ----------
    fn
        The implementation. Receives the evaluated argument.
    kind
        Kind of the result. `None` means the kind of the argument.
    vector
        Whether the result is a ChainVector. `None` means same as the argument.
    arg_kinds
        Allowed kinds of the argument. `None` means any kind.
    """

    def __init__(
        self,
        name: str,
        fn: Callable[[Any], Any],
        *,
        kind: str | None,
        vector: bool | None,
        arg_kinds: Sequence[str] | None = None,
    ):
        self.name = name
        self.fn = fn
        self.kind = kind
        self.vector = vector
        self.arg_kinds = arg_kinds


FUNCTIONS: dict[str, Function] = {
    f.name: f
    for f in [
        Function("all", _fn_all, kind=BOOL, vector=False),
        Function("any", _fn_any, kind=BOOL, vector=False),
        Function("unique", _fn_unique, kind=None, vector=True),
        Function("length", _fn_length, kind=NUM, vector=False),
        Function("len", _fn_length, kind=NUM, vector=False),
        Function("sum", _fn_sum, kind=NUM, vector=False, arg_kinds=(NUM, BOOL, ANY)),
        Function("mean", _fn_mean, kind=NUM, vector=False, arg_kinds=(NUM, BOOL, ANY)),
        Function("min", _fn_min, kind=None, vector=False),
        Function("max", _fn_max, kind=None, vector=False),
        Function("nchar", _fn_nchar, kind=NUM, vector=None, arg_kinds=(STR, ANY)),
        Function("is_na", _fn_is_na, kind=BOOL, vector=None),
    ]
}


class Call(Node):
    def __init__(self, function: Function, arg: Node):
        if function.arg_kinds is not None and arg.kind not in function.arg_kinds:
            raise TypeMismatch(f"`{function.name}()` can't be applied to {arg.kind} values (`{arg}`).")
        self.function = function
        self.arg = arg
        self.kind = arg.kind if function.kind is None else function.kind
        self.is_vector = arg.is_vector if function.vector is None else function.vector

    def evaluate(self, env):
        return self.function.fn(self.arg.evaluate(env))

    def children(self):
        return (self.arg,)

    def __repr__(self):
        return f"{self.function.name}({self.arg})"
