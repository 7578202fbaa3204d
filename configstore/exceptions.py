"""Custom exceptions for the configuration store."""

from typing import Any, Optional


class ConfigStoreError(Exception):
    """Base exception for all configuration store errors."""

    def __init__(
        self,
        message: str,
        *,
        type: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.type = type or "configstore_error"
        self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        msg = self.message
        if self.type:
            msg = f"{self.type}: {msg}"
        if self.code:
            msg = f"[{self.code}] {msg}"
        return msg


class NotFoundError(ConfigStoreError):
    """Requested entity does not exist."""

    def __init__(
        self,
        message: str = "Resource not found",
        *,
        entity: Optional[str] = None,
        entity_id: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        if entity and entity_id is not None:
            message = f"{entity} not found: {entity_id}"
        super().__init__(message, type="not_found", code="404", **kwargs)
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(ConfigStoreError):
    """Write rejected because it would break a store invariant."""

    def __init__(self, message: str = "Conflict", **kwargs: Any) -> None:
        super().__init__(message, type="conflict", code="409", **kwargs)


class ValidationError(ConfigStoreError):
    """Input is structurally invalid."""

    def __init__(self, message: str = "Validation error", **kwargs: Any) -> None:
        super().__init__(message, type="validation_error", code="400", **kwargs)


class StorageError(ConfigStoreError):
    """Backend I/O or transaction failure. The transaction was rolled back."""

    def __init__(self, message: str = "Storage failure", **kwargs: Any) -> None:
        super().__init__(message, type="storage_error", code="500", **kwargs)


class RepairError(StorageError):
    """Startup repair of legacy rows failed."""

    def __init__(self, message: str = "Startup repair failed", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.type = "repair_error"


class MigrationError(ConfigStoreError):
    """Backend migration failed. The previous backend is still active."""

    def __init__(
        self,
        message: str = "Backend migration failed",
        *,
        exit_code: Optional[int] = None,
        stderr: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        if stderr:
            message = f"{message}: {stderr.strip()}"
        super().__init__(message, type="migration_error", code="500", **kwargs)
        self.exit_code = exit_code
        self.stderr = stderr
