class KeepsakeError(Exception):
    """Base class for Keepsake-specific errors."""


# Stream structure / storage I/O
class StructuralIOError(KeepsakeError):
    pass


class InvalidBackupStreamError(StructuralIOError):
    pass


# Authentication
class AuthenticationError(KeepsakeError):
    pass


class BadMacError(AuthenticationError):
    """A streamed payload failed authentication; the frame stream itself is intact."""


# Operation control
class CancellationError(KeepsakeError):
    pass


class DowngradeError(KeepsakeError):
    def __init__(self, current_version: int, backup_version: int):
        super().__init__(
            f"Tried to import a backup with version {backup_version} into a database with version {current_version}"
        )
        self.current_version = current_version
        self.backup_version = backup_version


# Payload consistency
class SizeMismatchError(KeepsakeError):
    def __init__(self, expected: int, actual: int):
        super().__init__(f"Size mismatch! expected {expected} bytes, source produced {actual}")
        self.expected = expected
        self.actual = actual


class UnknownTypeError(KeepsakeError, TypeError):
    pass
