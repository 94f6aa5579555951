from __future__ import annotations


class TenantShieldError(Exception):
    """Base error for TenantShield."""

    code = "TENANTSHIELD_ERROR"
    status_code = 500

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)

    def to_detail(self) -> dict[str, object]:
        return {"code": self.code, "message": self.message}


class TenantContextError(TenantShieldError):
    """Tenant context failure."""


class ContextMissing(TenantContextError):
    """Tenant-scoped operation attempted without a bound tenant context."""

    code = "TENANT_CONTEXT_MISSING"
    status_code = 400


class ContextValidationError(TenantContextError):
    """Malformed tenant identifier."""

    code = "TENANT_ID_INVALID"
    status_code = 400


class ContextAccessDenied(TenantContextError):
    """Identity tenant does not match the requested tenant."""

    code = "TENANT_ACCESS_DENIED"
    status_code = 403

    def __init__(
        self,
        message: str | None = None,
        *,
        identity_tenant_id: str | None = None,
        requested_tenant_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.identity_tenant_id = identity_tenant_id
        self.requested_tenant_id = requested_tenant_id


class ContextAlreadyBound(TenantContextError):
    """Execution unit already holds a tenant context; nesting is not allowed."""

    code = "TENANT_CONTEXT_ALREADY_BOUND"
    status_code = 500


class ContextVerificationFailure(TenantContextError):
    """Store-reported tenant differs from the bound tenant context."""

    code = "TENANT_CONTEXT_VERIFICATION_FAILED"
    status_code = 500

    def __init__(self, message: str | None = None, *, expected: str | None, observed: str | None) -> None:
        super().__init__(message)
        self.expected = expected
        self.observed = observed


class AuthorizationError(TenantShieldError):
    """Authenticated identity lacks a required capability."""

    status_code = 403

    def __init__(self, message: str | None = None, *, required: list[str], missing: list[str]) -> None:
        super().__init__(message)
        self.required = required
        self.missing = missing

    def to_detail(self) -> dict[str, object]:
        return {**super().to_detail(), "required": self.required, "missing": self.missing}


class InsufficientRoles(AuthorizationError):
    """Identity holds none of the required roles."""

    code = "INSUFFICIENT_ROLES"


class InsufficientPermissions(AuthorizationError):
    """Identity is missing required permissions."""

    code = "INSUFFICIENT_PERMISSIONS"


class InsufficientScopes(AuthorizationError):
    """Identity is missing required scopes."""

    code = "INSUFFICIENT_SCOPES"


class UnsupportedMethod(TenantShieldError):
    """HTTP method has no scope mapping."""

    code = "METHOD_NOT_ALLOWED"
    status_code = 405


class SubsystemDeletionFailure(TenantShieldError):
    """A deletion phase failed; recorded in the report, never raised out of the orchestrator."""

    code = "SUBSYSTEM_DELETION_FAILED"

    def __init__(self, subsystem: str, message: str) -> None:
        super().__init__(message)
        self.subsystem = subsystem


class VerificationResidualFound(TenantShieldError):
    """Post-deletion recheck found residual data."""

    code = "VERIFICATION_RESIDUAL_FOUND"

    def __init__(self, subsystem: str, residual_count: int) -> None:
        super().__init__(f"{subsystem} still holds {residual_count} records for the subject")
        self.subsystem = subsystem
        self.residual_count = residual_count


class ReportSigningFailure(TenantShieldError):
    """Signing collaborator failed; the erasure run is incomplete."""

    code = "REPORT_SIGNING_FAILED"
    status_code = 502


class ReportNotFound(TenantShieldError):
    """Deletion report does not exist for this tenant."""

    code = "DELETION_REPORT_NOT_FOUND"
    status_code = 404


class ReportImmutable(TenantShieldError):
    """Signed deletion reports cannot be overwritten."""

    code = "DELETION_REPORT_IMMUTABLE"
    status_code = 409


class SignerConfigError(TenantShieldError):
    """Missing or invalid signing provider configuration."""

    code = "SIGNER_CONFIG_INVALID"


class IdentityUnavailable(TenantShieldError):
    """No authenticated identity could be resolved for the request."""

    code = "AUTH_UNAUTHORIZED"
    status_code = 401


class SubjectNotFound(TenantShieldError):
    """Subject does not exist in this tenant."""

    code = "DSR_SUBJECT_NOT_FOUND"
    status_code = 404


class RectificationInvalid(TenantShieldError):
    """Rectification requested for a field that cannot be corrected."""

    code = "DSR_RECTIFICATION_INVALID"
    status_code = 422


class ErasureJobNotCancellable(TenantShieldError):
    """Erasure job has already started or finished and can no longer be cancelled."""

    code = "ERASURE_JOB_NOT_CANCELLABLE"
    status_code = 409


class ErasureQueueUnavailable(TenantShieldError):
    """Erasure queue is unreachable."""

    code = "ERASURE_QUEUE_UNAVAILABLE"
    status_code = 503
