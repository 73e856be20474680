"""Custom exceptions for Email Triage."""


class EmailTriageError(Exception):
    """Base exception for all Email Triage errors."""


class ConfigurationError(EmailTriageError):
    """Exception raised for configuration related errors."""


class ValidationError(EmailTriageError):
    """Exception raised for invalid caller input."""


class NotFoundError(EmailTriageError):
    """Exception raised when a message or bucket does not exist for the user."""


class ProviderUnavailableError(EmailTriageError):
    """Exception raised when a model provider cannot be reached or is rate limited."""


class OllamaConnectionError(ProviderUnavailableError):
    """Exception raised when unable to connect to Ollama."""


class OllamaInferenceError(EmailTriageError):
    """Exception raised when Ollama answers with an unusable response."""


class QueryParseError(EmailTriageError):
    """Exception raised when a search query cannot be turned into filters."""


class QueryParserUnavailableError(QueryParseError, ProviderUnavailableError):
    """Exception raised when the query parser's provider is unreachable."""


class EmbeddingError(EmailTriageError):
    """Exception raised when an embedding cannot be produced or is malformed."""


class StorageError(EmailTriageError):
    """Exception raised for storage backend failures."""


class VectorIndexError(StorageError):
    """Exception raised when the vector index rejects an operation."""
