"""
Error Taxonomy Module

Every failure the core can surface to a caller. Each operation either returns
a fully consistent result or raises one of these; none of them is ever
replaced by a default value.
"""

from typing import Optional


class BankingError(Exception):
    """Base class for all core banking errors"""

    def __init__(self, message: str, entity_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id


class NotFoundError(BankingError):
    """Account or session is absent, or not owned by the caller"""


class ConflictError(BankingError):
    """Duplicate account for owner and type, or account number exhaustion"""


class InvalidStateError(BankingError):
    """Operation not allowed in the entity's current state"""


class ValidationError(BankingError, ValueError):
    """Input rejected before touching the store"""


class StorageError(BankingError):
    """Store operation or atomic unit failed"""


class DuplicateRecordError(StorageError):
    """Insert violated a unique key or unique index"""

    def __init__(self, table: str, message: str):
        super().__init__(message)
        self.table = table
