"""Custom exceptions for usage-event ingestion failures."""


class IngestionError(Exception):
    """Base exception for ingestion errors."""


class SourceUnreadableError(IngestionError):
    """Raised when a source cannot be read or hashed."""


class ParseError(IngestionError):
    """Raised when a source payload is malformed."""


class SourceSchemaError(ParseError):
    """Raised when required tables are missing from an embedded source database."""


class StorageError(IngestionError):
    """Raised when writing to the local store fails."""


class AdapterError(IngestionError):
    """Raised when a whole tool adapter cannot be synced."""
