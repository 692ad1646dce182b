"""
Exceptions
==========

Error taxonomy for the tidying and model-fitting stages.

Tidying errors (SchemaMismatch, UnmappedCategory) are fatal: they abort the
whole preparation run. Fitting errors (IncompleteDesign, ModelFitFailure) are
raised by the single-partition fitters and caught by the batch fitters, which
record them against the metric and continue.

All errors subclass ValueError so callers that already guard analysis code
with ``except ValueError`` keep working.
"""
from __future__ import annotations

from typing import Any, List, Optional, Sequence


class RedoxStatsError(ValueError):
    """Base class for all redox_stats errors."""
    pass


class SchemaMismatch(RedoxStatsError):
    """
    A column name does not split into the declared number of tokens.

    Attributes:
        column: Offending column name
        expected: Declared number of tokens
        actual: Number of tokens found
    """

    def __init__(self, column: str, expected: int, actual: int, detail: str = ""):
        self.column = column
        self.expected = expected
        self.actual = actual
        msg = (
            f"Column '{column}' splits into {actual} tokens, "
            f"schema declares {expected}"
        )
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)


class UnmappedCategory(RedoxStatsError):
    """
    Raw tokens were found that have no entry in the declared level table.

    Attributes:
        column: Column being recoded
        tokens: Sorted list of unmapped raw tokens
        declared: Declared raw levels
    """

    def __init__(self, column: str, tokens: Sequence[Any], declared: Sequence[Any]):
        self.column = column
        self.tokens = list(tokens)
        self.declared = list(declared)
        super().__init__(
            f"Column '{column}' contains tokens {self.tokens} not in declared "
            f"levels {self.declared}"
        )


class IncompleteDesign(RedoxStatsError):
    """
    A metric partition lacks full within-subject cell coverage.

    Attributes:
        metric: Group key of the partition
        missing: List of (subject, cell) tuples that are absent or missing
    """

    def __init__(self, metric: Any, missing: List[tuple]):
        self.metric = metric
        self.missing = list(missing)
        preview = ", ".join(str(m) for m in self.missing[:5])
        more = f" (+{len(self.missing) - 5} more)" if len(self.missing) > 5 else ""
        super().__init__(
            f"Unbalanced design for '{metric}': {len(self.missing)} missing "
            f"subject x cell combinations: {preview}{more}"
        )


class ModelFitFailure(RedoxStatsError):
    """
    The statistics library failed while fitting a partition.

    Attributes:
        metric: Group key of the partition
        cause: Original exception, if any
    """

    def __init__(self, metric: Any, message: str, cause: Optional[BaseException] = None):
        self.metric = metric
        self.cause = cause
        super().__init__(f"Model fitting failed for '{metric}': {message}")
