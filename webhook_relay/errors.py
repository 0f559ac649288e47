"""Error taxonomy for the relay.

On the notification path these are caught per item (or per connection for
relay delivery) and logged. The management endpoints turn them into HTTP
errors.
"""


class RelayError(Exception):
    """Base class for relay errors."""


class ValidationFailure(RelayError):
    """A validation token or client state did not match."""


class LookupMiss(RelayError):
    """A notification referenced a subscription that is not tracked."""


class DecryptionError(RelayError):
    """Encrypted content could not be unwrapped or decrypted."""


class RemoteFetchError(RelayError):
    """A call to the remote resource API failed."""


class AccessTokenError(RemoteFetchError):
    """An access token could not be acquired for a remote call."""


class RelayDeliveryError(RelayError):
    """A live connection could not receive a broadcast."""
