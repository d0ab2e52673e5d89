from __future__ import annotations


class NoetError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(NoetError):
    status_code = 404


class ValidationError(NoetError):
    status_code = 400


class ConflictError(NoetError):
    status_code = 409


class UploadRejected(NoetError):
    status_code = 400


class StorageError(NoetError):
    status_code = 500
