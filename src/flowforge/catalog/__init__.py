"""Node catalog access: MCP client, task templates, gap search and classification."""

from .cache import TTLCache
from .classifier import CatalogNode, CategorizationResult, ConfigurationBatch, NodeClassifier
from .client import MCPCatalogClient, NodeCatalog, NodeValidation, SearchResult, WorkflowValidation
from .patches import PatchRegistry
from .retry import BackoffPolicy, with_backoff
from .search import GapSearch
from .tasks import TaskResolver, UnmatchedCapability

__all__ = [
    "BackoffPolicy",
    "CatalogNode",
    "CategorizationResult",
    "ConfigurationBatch",
    "GapSearch",
    "MCPCatalogClient",
    "NodeCatalog",
    "NodeClassifier",
    "NodeValidation",
    "PatchRegistry",
    "SearchResult",
    "TTLCache",
    "TaskResolver",
    "UnmatchedCapability",
    "WorkflowValidation",
    "with_backoff",
]
