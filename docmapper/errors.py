"""Error taxonomy shared by the document engine and every storage client."""


class DocMapperError(Exception):
    """Base class for all errors raised by docmapper."""


class ValidationError(DocMapperError):
    """
    A document field failed its type, required, choices, range, pattern or custom validator check.

    Attributes:
        field (str | None): Name of the offending field.
        constraint (str | None): The constraint that failed (e.g. "required", "type", "choices").
    """

    def __init__(self, message: str, field: str | None = None, constraint: str | None = None):
        super().__init__(message)
        self.field = field
        self.constraint = constraint


class StorageConnectionError(DocMapperError):
    """No storage client matches a url, or a client could not reach its backend."""


class StorageOperationError(DocMapperError):
    """A storage client failed to carry out an operation that the native driver did not reject itself."""


class SchemaError(DocMapperError):
    """A document schema is malformed. Raised as soon as the problem is detectable."""


class QueryTranslationError(DocMapperError):
    """A query uses an operator that the target storage client cannot express."""
