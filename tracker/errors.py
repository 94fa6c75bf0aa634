"""Error taxonomy shared by the store backends and the background tasks."""


class StoreError(Exception):
    """Base class for every persistence failure."""


class StoreConnectionError(StoreError):
    """The backend could not be reached. Fatal at startup."""


class SchemaError(StoreError):
    pass


class ReadError(StoreError):
    pass


class WriteError(StoreError):
    pass


class PruneError(StoreError):
    """A retention pass failed; terminates the periodic pruning task."""


class ProtocolError(Exception):
    """A sync frame could not be decoded."""
