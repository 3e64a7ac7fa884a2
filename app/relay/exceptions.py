"""Errors raised by broker publishers and understood by the relay worker."""


class PublishError(Exception):
    """
    Raised when the broker did not accept a message.

    This is a RETRYABLE error. The relay records the failure on the message
    and tries again on a later cycle until the retry policy dead-letters it.

    Examples:
    - Broker returns 5xx, 408 or 429
    - Network timeout
    - Connection errors
    """

    pass


class PermanentPublishError(PublishError):
    """
    Raised when retrying cannot succeed (payload rejected, schema mismatch).

    This is a TERMINAL error. The message is dead-lettered on the first failure.
    """

    pass
