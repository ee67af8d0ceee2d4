from .base import OperationRepository
from .helpers import occ_update
from .memory import InMemoryOperationRepository
from .models import (
    Operation,
    OperationFilter,
    OperationPage,
    OperationState,
    OperationType,
)
from .repository import SqlOperationRepository
from .schema import build_operations_table, metadata
from .session import DbSession

__all__ = [
    "DbSession",
    "InMemoryOperationRepository",
    "Operation",
    "OperationFilter",
    "OperationPage",
    "OperationRepository",
    "OperationState",
    "OperationType",
    "SqlOperationRepository",
    "build_operations_table",
    "metadata",
    "occ_update",
]
