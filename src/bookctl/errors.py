from __future__ import annotations


class BookctlError(RuntimeError):
    """Base class for failures raised by the query layer."""


class ConnectivityError(BookctlError):
    """Raised when the collection handle cannot be reached."""


class MalformedRequestError(BookctlError):
    """Raised when a filter, projection, sort or pipeline is structurally invalid."""
