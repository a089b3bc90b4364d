"""Error taxonomy for wormhole-web transfers."""


class WormholeWebError(Exception):
    """Base class for wormhole-web errors."""


class TransferValidationError(WormholeWebError):
    """Raised when untrusted input (code, id, filename, body) is malformed."""


class TransferNotFoundError(WormholeWebError):
    """Raised when a transfer id or one of its files cannot be resolved."""


class BackendError(WormholeWebError):
    """Raised when the transfer backend fails (handshake, transit or remote side)."""


class StorageError(WormholeWebError):
    """Raised when local transfer storage cannot be created, written or read."""


class StorageAccessError(WormholeWebError):
    """Raised when a resolved path would escape the transfer-storage root."""


class InvalidTransitionError(WormholeWebError, ValueError):
    """Raised when a transfer record is moved to a state it cannot reach."""


__all__ = [
    "BackendError",
    "InvalidTransitionError",
    "StorageAccessError",
    "StorageError",
    "TransferNotFoundError",
    "TransferValidationError",
    "WormholeWebError",
]
