from .database import SQLiteFlowDB
from .digest import PayloadDigester
from .flow_repository import FlowRepository, StaleWriteError

__all__ = [
    "SQLiteFlowDB",
    "FlowRepository",
    "PayloadDigester",
    "StaleWriteError",
]
