from __future__ import annotations


class TenantVaultError(Exception):
    """Base error for tenantvault."""

    code = "INTERNAL_ERROR"
    http_status = 500


class ModuleConnectionError(TenantVaultError):
    """A module database is unreachable."""

    code = "MODULE_CONNECTION_ERROR"
    http_status = 503


class ConnectionTimeoutError(ModuleConnectionError):
    """No pooled connection became available in time."""

    code = "CONNECTION_TIMEOUT"


class ValidationError(TenantVaultError):
    """Caller supplied invalid input."""

    code = "VALIDATION_ERROR"
    http_status = 400


class UnknownModuleError(ValidationError):
    """Module name is not configured."""

    code = "UNKNOWN_MODULE"


class InvalidIdentifierError(ValidationError):
    """Identifier failed the SQL identifier allow-list."""

    code = "INVALID_IDENTIFIER"


class DuplicateTenantName(ValidationError):
    """A tenant with the same name already exists."""

    code = "DUPLICATE_TENANT_NAME"
    http_status = 409


class BackupAlreadyRunning(ValidationError):
    """Another job for the same config is still running."""

    code = "BACKUP_ALREADY_RUNNING"
    http_status = 409


class InvalidJobTransition(ValidationError):
    """Job or restore status change not allowed by the lifecycle."""

    code = "INVALID_STATUS_TRANSITION"
    http_status = 409


class TenantNotFound(TenantVaultError):
    """Tenant does not exist or is inactive."""

    code = "TENANT_NOT_FOUND"
    http_status = 404


class BackupJobNotFound(TenantVaultError):
    """Backup job does not exist."""

    code = "BACKUP_JOB_NOT_FOUND"
    http_status = 404


class ConfigNotFoundOrInactive(TenantVaultError):
    """Backup config is missing or deactivated."""

    code = "BACKUP_CONFIG_NOT_FOUND"
    http_status = 404


class SchemaCreationError(TenantVaultError):
    """Tenant provisioning failed and was rolled back."""

    code = "SCHEMA_CREATION_FAILED"


class BackupExecutionError(TenantVaultError):
    """Backup job failed after it was started."""

    code = "BACKUP_EXECUTION_FAILED"


class RestoreError(TenantVaultError):
    """Restore could not be completed."""

    code = "RESTORE_FAILED"


class MigrationError(TenantVaultError):
    """Core migration failed."""

    code = "MIGRATION_FAILED"


class ProducerConfigError(TenantVaultError):
    """Missing or invalid artifact producer configuration."""

    code = "PRODUCER_CONFIG_ERROR"


class IntegrationError(TenantVaultError):
    """IAM or messaging collaborator failed."""

    code = "INTEGRATION_ERROR"
    http_status = 502
