from __future__ import annotations


class JobRelayError(Exception):
    pass


class TransientError(JobRelayError):
    """Network failure, timeout or upstream 5xx. Retried by the next loop cycle."""


class NotFoundError(JobRelayError):
    pass


class AuthExpiredError(JobRelayError):
    pass


class InvalidGrantError(AuthExpiredError):
    """The refresh token was rejected; the principal must re-authorize."""


class RejectedError(JobRelayError):
    pass


class ConfigurationMissingError(JobRelayError):
    pass


class StoreUnavailableError(JobRelayError):
    pass
