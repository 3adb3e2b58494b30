"""Storage error taxonomy shared by every backend."""


class StorageError(Exception):
    """Base class for storage-layer failures."""


class StorageUnavailable(StorageError):
    """The backing store cannot be reached (never connected, or connection lost).

    The health supervisor treats this as a signal to demote to the
    in-memory backend; callers should not retry blindly.
    """


class ConflictError(StorageError):
    """A uniqueness rule was violated and the backend could not resolve it.

    Slug collisions are disambiguated automatically; username and email
    collisions are not and surface as this error.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field
