from .search import cosine_similarity, find_best
from .store import GroupStore, validate_group_name

__all__ = ["GroupStore", "cosine_similarity", "find_best", "validate_group_name"]
