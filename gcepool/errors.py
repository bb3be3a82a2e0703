# gcepool/errors.py

class ProviderError(RuntimeError):
    """Base class for failures raised by the GCE provider."""
    pass

# --- Configuration ---
class ConfigError(ProviderError):
    """Pool or provider configuration is missing"""
    pass

# --- Lookup ---
class VmNotFoundError(ProviderError):
    """VM does not exist in the pool's zone"""
    pass

class SnapshotNotFoundError(ProviderError):
    """No snapshot set carries the requested snapshot_name for the VM"""
    pass

# --- Creation / mutation ---
class SnapshotExistsError(ProviderError):
    """A snapshot set with the same snapshot_name already exists for the VM"""
    pass

class RevertError(ProviderError):
    """Revert cannot start, e.g. the VM has no attached disk"""
    pass

class OperationFailedError(ProviderError):
    """A remote operation finished DONE but reported one or more errors.

    ``errors`` holds the (code, message) pairs reported by the operation.
    """

    def __init__(self, message: str, errors=None):
        super().__init__(message)
        self.errors = list(errors or [])

# --- Connections ---
class ConnectionPoolTimeout(ProviderError):
    """No compute connection became free within the pool timeout"""
    pass
