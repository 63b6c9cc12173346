"""
Custom exceptions for AutoOrganize.

All application-specific exceptions inherit from AutoOrganizeError.
"""

from typing import Optional


class AutoOrganizeError(Exception):
    """Base exception for all AutoOrganize errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[str] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__.upper()
        self.details = details
        self.recoverable = recoverable

    def to_dict(self, safe: bool = False) -> dict:
        """Convert exception to a dictionary for callers that serialize errors.

        Args:
            safe: If True, omit internal details.
        """
        result = {
            "error": {
                "code": self.code,
                "message": self.message,
                "recoverable": self.recoverable,
            }
        }
        if not safe and self.details:
            result["error"]["details"] = self.details
        return result


# --- Extraction Errors ---

class ExtractionError(AutoOrganizeError):
    """Malformed input or pipeline failure during entity extraction."""

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(
            message=message,
            code="EXTRACTION_ERROR",
            details=details,
            recoverable=False,
        )


# --- Relationship Errors ---

class RelationshipBuildError(AutoOrganizeError):
    """Storage or embedding lookup failure while building relationships."""

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(
            message=message,
            code="RELATIONSHIP_BUILD_ERROR",
            details=details,
            recoverable=True,
        )


# --- Embedding Errors ---

class EmbeddingError(AutoOrganizeError):
    """Model load or inference failure."""

    def __init__(
        self,
        message: str,
        model: Optional[str] = None,
        details: Optional[str] = None,
        code: str = "EMBEDDING_ERROR",
    ):
        super().__init__(
            message=message,
            code=code,
            details=details or (f"Model: {model}" if model else None),
            recoverable=False,
        )
        self.model = model


class ModelNotFoundError(EmbeddingError):
    """Requested embedding model is not registered."""

    def __init__(self, model: str):
        super().__init__(
            message=f"Embedding model not found: {model}",
            model=model,
            code="MODEL_NOT_FOUND",
        )


class DimensionMismatchError(EmbeddingError):
    """Backend produced a vector of the wrong length for the model."""

    def __init__(self, model: str, expected: int, actual: int):
        super().__init__(
            message=f"Model {model} produced {actual} dimensions, expected {expected}",
            model=model,
            code="DIMENSION_MISMATCH",
        )
        self.expected = expected
        self.actual = actual


# --- Graph Errors ---

class GraphQueryError(AutoOrganizeError):
    """Storage failure during traversal, analytics or mutation."""

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(
            message=message,
            code="GRAPH_QUERY_ERROR",
            details=details,
            recoverable=False,
        )


class UnknownAlgorithmError(GraphQueryError):
    """Requested graph algorithm is not registered."""

    def __init__(self, kind: str, algorithm: str, available: list[str]):
        super().__init__(
            message=f"Unknown {kind} algorithm: {algorithm}",
            details=f"Available: {', '.join(sorted(available))}",
        )
        self.algorithm = algorithm


# --- Storage Errors ---

class StorageError(AutoOrganizeError):
    """Errors raised by the persistence layer."""

    def __init__(self, operation: str, details: Optional[str] = None):
        super().__init__(
            message=f"Storage operation failed: {operation}",
            code="STORAGE_ERROR",
            details=details,
            recoverable=True,
        )
        self.operation = operation


# --- Configuration Errors ---

class ConfigError(AutoOrganizeError):
    """Configuration errors."""
    pass


class ValidationError(AutoOrganizeError):
    """Invalid option values."""

    def __init__(self, field: str, reason: str):
        super().__init__(
            message=f"Invalid value for {field}: {reason}",
            code="VALIDATION_ERROR",
            recoverable=False,
        )
        self.field = field
