from .models import CompletionJob
from .session import get_engine, get_session, init_db

__all__ = [
    "CompletionJob",
    "get_engine",
    "get_session",
    "init_db",
]
