from __future__ import annotations


class StorageError(Exception):
    status_code = 500
    public_message: str | None = None

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def detail(self) -> str:
        return self.public_message or self.message


class ConstraintViolation(StorageError):
    status_code = 400


class DuplicateRecord(ConstraintViolation):
    status_code = 409


class ConfigurationError(StorageError):
    status_code = 503


class ProviderNotInitialized(StorageError):
    status_code = 503

    def __init__(self, message: str = "Storage provider not initialized") -> None:
        super().__init__(message)


class UnsupportedOperation(StorageError):
    status_code = 501


class BackendFailure(StorageError):
    status_code = 500
    public_message = "Storage backend failure"
