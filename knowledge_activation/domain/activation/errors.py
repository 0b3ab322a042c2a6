from typing import Any, Dict, Optional


class ActivationError(Exception):
    """Base error for knowledge activation, tagged with a machine-readable code"""

    def __init__(self, message: str, code: str = "ACTIVATION_ERROR", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class KeywordMatchError(ActivationError):
    """Keyword matching failed for a single entry"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "KEYWORD_MATCH_ERROR", details)


class VectorSearchError(ActivationError):
    """Embedding generation or the vector index query failed"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VECTOR_SEARCH_ERROR", details)


class BudgetExceededError(ActivationError):
    """Raised only by callers that ask for a hard budget check"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "BUDGET_EXCEEDED", details)


ACTIVATION_FAILED = "ACTIVATION_FAILED"
STORE_REQUIRED = "STORE_REQUIRED"
