class StoreError(Exception):
    """Base class for session store failures."""


class StoreOpenError(StoreError):
    """Backing file could not be opened or constraints could not be applied."""


class WriteError(StoreError):
    """A storage write failed."""


class ReadError(StoreError):
    """A storage read failed."""


class ForeignKeyError(WriteError):
    """A write referenced a row that does not exist."""


class NotFoundError(StoreError, LookupError):
    """An update or delete matched no row."""


class CorruptDataError(StoreError):
    """A stored value could not be decoded."""

    def __init__(self, column: str, value: object) -> None:
        super().__init__(f"cannot decode {column}: {value!r}")
        self.column = column
        self.value = value
