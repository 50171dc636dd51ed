"""
Error hierarchy for the texturing pipeline.

Every failure the pipeline knows how to describe is raised as a subclass of
TexturingError carrying a human-readable message. The pipeline runner and the
CLI catch TexturingError, print the message and exit. No stack traces are
shown for known failure modes.

    InputError        — malformed mesh or scene data, missing output directory,
                        patches that cannot fit into an atlas.
    ValidationError   — an externally supplied labeling (or data cost table)
                        does not match the mesh/scene combination.
    PersistenceError  — a data cost or labeling file could not be read/written.
    NumericalError    — the global seam leveling solver did not converge.
                        Never fatal: the leveler reports it as a warning and
                        continues with the best available correction.
"""


class TexturingError(Exception):
    """
    Base class for all pipeline failures.

    Wraps the underlying error (file error, malformed array, etc.) with a
    message that names what went wrong. The pipeline runner forwards the
    message unchanged to the user.
    """
    pass


class InputError(TexturingError):
    """Raised when mesh or scene input is malformed."""
    pass


class ValidationError(TexturingError):
    """Raised when a labeling or data cost table does not match the mesh/scene."""
    pass


class PersistenceError(TexturingError):
    """Raised when an intermediate result file cannot be read or written."""
    pass


class NumericalError(TexturingError):
    """
    Describes a sparse solve that did not converge in budget.

    Global seam leveling never raises it: the error is built to format the
    warning it reports before applying the partial correction.

    Attributes:
        iterations: Number of iterations the solver ran before giving up.
        residual:   Relative residual norm of the returned solution.
    """

    def __init__(self, message: str, iterations: int = 0, residual: float = float("nan")):
        super().__init__(message)
        self.iterations = iterations
        self.residual = residual
