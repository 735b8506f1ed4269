class GatewayError(Exception):
    """Base class for errors raised by the messaging gateway and its stores."""


class AuthenticationError(GatewayError):
    """Missing, invalid or unverifiable credential, or unknown identity.

    The message is deliberately generic so a client cannot tell a bad token
    from a token for a user that does not exist.
    """

    def __init__(self, message: str = "Authentication error"):
        super().__init__(message)


class PersistenceError(GatewayError):
    """A store read or write failed or timed out."""


class NotFoundError(GatewayError):
    """The referenced document does not exist."""
