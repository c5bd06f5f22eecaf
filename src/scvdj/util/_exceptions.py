"""Errors raised by scvdj functions"""


class InvalidConfiguration(ValueError):
    """A parameter of a public function has an invalid value.

    Raised before any computation starts.
    """


class MalformedRecord(ValueError):
    """V(D)J data of a cell violates the one-entry-per-chain invariant."""

    def __init__(self, cell_id: str, column: str, message: str | None = None):
        self.cell_id = cell_id
        self.column = column
        if message is None:
            message = f"Cell `{cell_id}`: column `{column}` does not have one entry per chain."
        super().__init__(message)


class UnknownIdentifier(KeyError):
    """An expression references a name that is neither a chain column nor a cell column."""

    def __init__(self, identifier: str, message: str | None = None):
        self.identifier = identifier
        if message is None:
            message = f"Unknown identifier `{identifier}`: not a chain column and not found in `obs`."
        super().__init__(message)

    def __str__(self):
        # KeyError would otherwise wrap the message in quotes
        return self.args[0]


class TypeMismatch(TypeError):
    """An operator or function of an expression is applied to incompatible values."""


class InvalidExpression(InvalidConfiguration):
    """Expression text can't be parsed or uses unsupported syntax."""


class EmptyGraph(UserWarning):
    """No cell qualified for the neighbor graph. All cluster labels are missing."""
