from __future__ import annotations


class CalibrationError(RuntimeError):
    """Base class for errors that abort a feature or calibration run."""


class InsufficientDataError(CalibrationError):
    """
    Raised before fitting when the data cannot support a run.

    Attributes
    ----------
    required:
        Minimum count needed (rows, teams, ...). None when not count-based.
    available:
        Count actually available.
    context:
        Free-form description of what was short.
    """

    def __init__(
        self,
        context: str,
        required: int | None = None,
        available: int | None = None,
    ) -> None:
        self.context = context
        self.required = required
        self.available = available
        if required is not None and available is not None:
            message = f"{context}: need at least {required}, have {available}"
        else:
            message = context
        super().__init__(message)
