"""Error taxonomy for biorank stages."""

from __future__ import annotations

from typing import Iterable


class BiorankError(ValueError):
    """Base class for stage-level failures.

    ``identifiers`` lists the offending gene/sample/feature IDs when the
    failure can be attributed to specific items.
    """

    def __init__(self, message: str, identifiers: Iterable[object] | None = None):
        self.identifiers: tuple[str, ...] = tuple(
            str(x) for x in (identifiers if identifiers is not None else ())
        )
        if self.identifiers:
            head = ", ".join(self.identifiers[:10])
            more = "..." if len(self.identifiers) > 10 else ""
            message = f"{message} [{head}{more}]"
        super().__init__(message)


class ConfigurationError(BiorankError):
    """Invalid parameters for a stage."""


class DataError(BiorankError):
    """Input data violates a structural invariant."""


class NumericError(BiorankError):
    """A numeric routine produced or received non-finite values."""
