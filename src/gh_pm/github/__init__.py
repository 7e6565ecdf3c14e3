"""GitHub Projects backend: ``gh`` CLI client and task store."""

from .client import GhClient, GraphQLError
from .store import GitHubTaskStore

__all__ = ["GhClient", "GitHubTaskStore", "GraphQLError"]
