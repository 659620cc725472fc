"""
Index Tool Exceptions

Setup errors are raised before a job is submitted and map to a non-zero
status. Logical inconsistencies found while verifying are never raised;
they are recorded as data.
"""


class IndexToolError(Exception):
    """Base class for index tool failures."""
    pass


class SetupError(IndexToolError):
    """Raised when a job cannot be planned (bad arguments, missing tables)."""
    pass


class UnsupportedFeatureError(SetupError):
    """Raised for feature combinations the target tables do not support."""
    pass


class TableNotFoundError(SetupError):
    """Raised when a data table, view or index is not in the catalog."""
    pass

