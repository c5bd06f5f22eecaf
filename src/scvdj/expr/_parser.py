import ast
import re
from collections.abc import Callable

from scanpy import logging

from scvdj.util._exceptions import InvalidExpression, TypeMismatch, UnknownIdentifier

from ._tree import (
    FUNCTIONS,
    BinOp,
    BoolOp,
    Call,
    Compare,
    ElementwiseAnd,
    Identifier,
    IfExp,
    ListLiteral,
    Literal,
    Membership,
    Negative,
    Node,
    Not,
    Subscript,
)

#: Resolves an identifier to `(name, kind, is_vector)`
Resolver = Callable[[str], tuple[str, str, bool]]

_COMPARE_OPS = {
    ast.Eq: "==",
    ast.NotEq: "!=",
    ast.Lt: "<",
    ast.LtE: "<=",
    ast.Gt: ">",
    ast.GtE: ">=",
}

_BIN_OPS = {
    ast.Add: "+",
    ast.Sub: "-",
    ast.Mult: "*",
    ast.Div: "/",
    ast.FloorDiv: "//",
    ast.Mod: "%",
}

# string literals or an alias like `.chains`
_ALIAS_PATTERN = re.compile(r"""("(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')|(?<![\w.])\.([A-Za-z_]\w*)""")


def _replace_aliases(text: str, aliases: dict[str, str]) -> str:
    """Replace `.alias` tokens outside of string literals by the names they stand for."""

    def repl(match: re.Match) -> str:
        if match.group(1) is not None:
            return match.group(1)
        alias = match.group(2)
        if alias not in aliases:
            raise UnknownIdentifier(
                f".{alias}", f"Unknown alias `.{alias}`. Valid aliases are {', '.join('.' + a for a in aliases)}."
            )
        return aliases[alias]

    return _ALIAS_PATTERN.sub(repl, text)


class _TreeBuilder:
    """Convert a python AST into a typed expression tree."""

    def __init__(self, resolver: Resolver):
        self._resolver = resolver
        self.reduced: list[str] = []

    def reduce(self, node: Node) -> Node:
        """Wrap per-chain values in `any()` where a single boolean is required."""
        if node.is_vector:
            self.reduced.append(repr(node))
            return Call(FUNCTIONS["any"], node)
        return node

    def build(self, node: ast.AST) -> Node:
        method = getattr(self, f"_build_{type(node).__name__}", None)
        if method is None:
            raise InvalidExpression(f"Unsupported syntax: `{ast.unparse(node)}`.")
        return method(node)

    def _build_Constant(self, node: ast.Constant) -> Node:
        if node.value is not None and not isinstance(node.value, bool | int | float | str):
            raise InvalidExpression(f"Unsupported constant: `{ast.unparse(node)}`.")
        return Literal(node.value)

    def _build_List(self, node: ast.List | ast.Tuple) -> Node:
        values = []
        for elt in node.elts:
            value = self.build(elt)
            if not isinstance(value, Literal):
                raise InvalidExpression(f"Lists may only contain constants: `{ast.unparse(node)}`.")
            values.append(value.value)
        return ListLiteral(values)

    _build_Tuple = _build_List

    def _build_Name(self, node: ast.Name) -> Node:
        name, kind, is_vector = self._resolver(node.id)
        return Identifier(name, kind, is_vector)

    def _build_Compare(self, node: ast.Compare) -> Node:
        operands = [self.build(node.left)] + [self.build(c) for c in node.comparators]
        parts = []
        for op, left, right in zip(node.ops, operands[:-1], operands[1:], strict=True):
            if isinstance(op, ast.In | ast.NotIn):
                parts.append(Membership(left, right, negate=isinstance(op, ast.NotIn)))
            elif type(op) in _COMPARE_OPS:
                parts.append(Compare(_COMPARE_OPS[type(op)], left, right))
            else:
                raise InvalidExpression(f"Unsupported comparison in `{ast.unparse(node)}`.")
        return parts[0] if len(parts) == 1 else ElementwiseAnd(parts)

    def _build_BinOp(self, node: ast.BinOp) -> Node:
        if type(node.op) not in _BIN_OPS:
            raise InvalidExpression(f"Unsupported operator in `{ast.unparse(node)}`.")
        return BinOp(_BIN_OPS[type(node.op)], self.build(node.left), self.build(node.right))

    def _build_UnaryOp(self, node: ast.UnaryOp) -> Node:
        operand = self.build(node.operand)
        if isinstance(node.op, ast.Not):
            return Not(self.reduce(operand))
        if isinstance(node.op, ast.USub | ast.UAdd):
            if isinstance(operand, Literal) and isinstance(operand.value, int | float):
                return Literal(-operand.value if isinstance(node.op, ast.USub) else operand.value)
            return Negative(operand, -1 if isinstance(node.op, ast.USub) else 1)
        raise InvalidExpression(f"Unsupported operator in `{ast.unparse(node)}`.")

    def _build_BoolOp(self, node: ast.BoolOp) -> Node:
        op = "and" if isinstance(node.op, ast.And) else "or"
        return BoolOp(op, [self.reduce(self.build(v)) for v in node.values])

    def _build_IfExp(self, node: ast.IfExp) -> Node:
        return IfExp(self.reduce(self.build(node.test)), self.build(node.body), self.build(node.orelse))

    def _build_Call(self, node: ast.Call) -> Node:
        if not isinstance(node.func, ast.Name):
            raise InvalidExpression(f"Unsupported function call: `{ast.unparse(node)}`.")
        name = node.func.id
        if name not in FUNCTIONS:
            raise UnknownIdentifier(
                name, f"Unknown function `{name}()`. Available functions are {', '.join(FUNCTIONS)}."
            )
        if node.keywords or len(node.args) != 1:
            raise TypeMismatch(f"`{name}()` takes exactly one positional argument.")
        return Call(FUNCTIONS[name], self.build(node.args[0]))

    def _build_Subscript(self, node: ast.Subscript) -> Node:
        index = self.build(node.slice)
        if not isinstance(index, Literal) or not isinstance(index.value, int) or isinstance(index.value, bool):
            raise InvalidExpression(f"Only integer constants can be used as index: `{ast.unparse(node)}`.")
        return Subscript(self.build(node.value), index.value)


class Expression:
    """\
    A parsed and type-checked expression.

    Use :func:`parse_expression` to create instances.

    Attributes
    ----------
    text
        The expression as written by the user.
    root
        Root node of the expression tree.
    """

    def __init__(self, text: str, root: Node):
        self.text = text
        self.root = root

    @property
    def kind(self) -> str:
        """Kind of the values the expression produces (`num`, `str`, `bool` or `any`)"""
        return self.root.kind

    @property
    def is_vector(self) -> bool:
        """Whether the expression produces one value per chain"""
        return self.root.is_vector

    @property
    def identifiers(self) -> set[str]:
        """Columns referenced by the expression"""
        return self.root.identifiers()

    def evaluate(self, env):
        """Evaluate the expression for a single cell. `env` maps identifiers to their values."""
        return self.root.evaluate(env)

    def __repr__(self):
        return f"Expression({self.text!r})"


def parse_expression(
    text: str,
    resolver: Resolver,
    *,
    aliases: dict[str, str] | None = None,
    predicate: bool = False,
) -> Expression:
    """\
    Parse an expression and check it for type errors.

    The syntax is a subset of python expressions: literals, lists of literals, identifiers,
    comparisons (including `in`), arithmetics, `and`/`or`/`not`, conditional expressions,
    indexing of per-chain values with integer constants and calls to the functions
    `all`, `any`, `unique`, `length`, `sum`, `mean`, `min`, `max`, `nchar` and `is_na`.

    Where a single boolean is required (operands of `and`, `or` and `not`, the condition
    of a conditional expression and, if `predicate` is `True`, the result), per-chain values
    are implicitly reduced with `any()`.

    Parameters
    ----------
    text
        The expression
    resolver
        Function that maps an identifier to `(name, kind, is_vector)`. Raises
        :class:`~scvdj.util.UnknownIdentifier` for unknown names.
    aliases
        Mapping of aliases to identifiers. `.alias` in the expression is replaced by the identifier.
    predicate
        Whether the expression is used as a filter condition.

    Returns
    -------
    The parsed :class:`Expression`.
    """
    if not isinstance(text, str) or not text.strip():
        raise InvalidExpression("Expression must be a non-empty string.")
    source = _replace_aliases(text, aliases or {})
    try:
        tree = ast.parse(source.strip(), mode="eval")
    except SyntaxError as e:
        raise InvalidExpression(f"Invalid expression `{text}`: {e.msg}.") from None

    builder = _TreeBuilder(resolver)
    root = builder.build(tree.body)
    if predicate:
        root = builder.reduce(root)
        if root.kind not in ("bool", "any"):
            raise TypeMismatch(f"Filter expression `{text}` does not evaluate to a boolean, but to {root.kind} values.")

    for reduced in builder.reduced:
        logging.hint(f"`{reduced}` yields one value per chain and is reduced with `any()`.")
    return Expression(text, root)
