from __future__ import annotations


class BrokerError(Exception):
    """Base error for SQLBroker."""

    code = "BROKER_ERROR"


class ConfigurationError(BrokerError):
    """Missing or invalid startup configuration; fatal to the process."""

    code = "CONFIGURATION_ERROR"


class AuthenticationError(BrokerError):
    """Bad or missing token, bad signature, or failed envelope authentication."""

    code = "UNAUTHORIZED"


class EnvelopeAuthenticationError(AuthenticationError):
    """Envelope ciphertext or wrapped key failed to authenticate."""

    code = "DECRYPTION_FAILED"


class RevokedTokenError(AuthenticationError):
    """Token id is recorded as revoked in the ledger."""

    code = "TOKEN_REVOKED"


class ExpiredTokenError(AuthenticationError):
    """Token is past its expiry."""

    code = "TOKEN_EXPIRED"


class AccessDeniedError(BrokerError):
    """Connection not in the allow-list or operation not permitted."""

    code = "ACCESS_DENIED"


class InvalidRequestError(BrokerError):
    """Management request is malformed or out of bounds."""

    code = "INVALID_REQUEST"


class TokenRequestError(InvalidRequestError):
    """Token issuance request is malformed or out of bounds."""

    code = "INVALID_TOKEN_REQUEST"


class NotFoundError(BrokerError):
    """Tenant-scoped record does not exist."""

    code = "NOT_FOUND"


class CredentialResolutionError(BrokerError):
    """Connection credential could not be resolved for the tenant."""

    code = "CREDENTIAL_UNAVAILABLE"


class BackendUnavailableError(BrokerError):
    """Backend adapter construction or health check failed."""

    code = "BACKEND_UNAVAILABLE"


class ExecutionError(BrokerError):
    """Backend query or exec failure."""

    code = "EXECUTION_FAILED"


class InvalidDialectError(BrokerError):
    """Unrecognized dialect string."""

    code = "INVALID_DIALECT"


class AuditWriteError(BrokerError):
    """Audit row could not be persisted."""

    code = "AUDIT_UNAVAILABLE"
