"""
Error taxonomy for the time-score pipeline.

Structural errors carry the cell type and fold they were raised for so the
caller can tell which part of a run failed.
"""

from typing import Optional


class TimescoreError(Exception):
    """Base class for pipeline errors."""

    def __init__(
        self,
        message: str,
        cell_type: Optional[str] = None,
        fold: Optional[int] = None
    ):
        self.message = message
        self.cell_type = cell_type
        self.fold = fold
        super().__init__(self._format())

    def _format(self) -> str:
        context = []
        if self.cell_type is not None:
            context.append(f"cell_type={self.cell_type}")
        if self.fold is not None:
            context.append(f"fold={self.fold}")
        if context:
            return f"{self.message} [{', '.join(context)}]"
        return self.message

    def with_context(
        self,
        cell_type: Optional[str] = None,
        fold: Optional[int] = None
    ) -> "TimescoreError":
        """Return a copy of the error with missing context filled in."""
        return type(self)(
            self.message,
            cell_type=self.cell_type if self.cell_type is not None else cell_type,
            fold=self.fold if self.fold is not None else fold,
        )


class InvalidInputError(TimescoreError):
    """Malformed partition request (fold count larger than population, empty group)."""


class InsufficientDataError(TimescoreError):
    """A label group is empty or too small for differential expression or ROC."""


class MissingGeneWarning(UserWarning):
    """A signature gene is absent from the matrix being scored; it is skipped."""
