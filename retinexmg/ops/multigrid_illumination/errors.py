##
# @file   errors.py
# @brief  Exceptions raised by the multigrid illumination solver.
#


class MultigridError(Exception):
    """Base class for all multigrid illumination errors."""


class ConfigurationError(MultigridError, ValueError):
    """Invalid solver options, e.g. more grid levels than the image size allows."""


class SolverFailure(MultigridError, RuntimeError):
    """The dense solve on the coarsest level reported a non-zero status."""

    def __init__(self, message, status=None):
        super(SolverFailure, self).__init__(message)
        self.status = status


class DimensionMismatch(MultigridError, ValueError):
    """Grid shapes inconsistent with each other or with the level hierarchy."""
