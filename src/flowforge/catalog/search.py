"""Gap search: find catalog nodes for capabilities no task template covers."""

import asyncio
import logging
import re
from typing import Literal, Optional

from pydantic import BaseModel, Field

from flowforge.catalog.client import NodeCatalog, SearchResult
from flowforge.catalog.tasks import UnmatchedCapability
from flowforge.core.exceptions import CatalogServiceError

logger = logging.getLogger(__name__)

SearchStrategy = Literal["primary", "alternative", "optimized", "not_found"]

# Generic capability words mapped to concrete node search terms
SEARCH_OPTIMIZATIONS: dict[str, list[str]] = {
    # Databases
    "database": ["postgres", "mysql", "mongodb", "redis", "sqlite", "mssql"],
    "sql": ["postgres", "mysql", "mssql", "sqlite"],
    "nosql": ["mongodb", "redis", "couchdb", "dynamodb"],
    # Communication
    "notify": ["slack", "email", "webhook", "discord", "teams", "telegram"],
    "message": ["slack", "discord", "telegram", "sms", "whatsapp"],
    "chat": ["slack", "discord", "telegram", "teams", "whatsapp"],
    # Files
    "file": ["ftp", "s3", "dropbox", "googledrive", "box", "onedrive"],
    "storage": ["s3", "dropbox", "googledrive", "box", "azure"],
    "cloud": ["aws", "s3", "azure", "gcp", "digitalocean"],
    # Spreadsheets
    "spreadsheet": ["googlesheets", "excel", "airtable", "notion"],
    "table": ["airtable", "notion", "googlesheets", "excel"],
    # APIs
    "api": ["httpRequest", "graphql", "rest", "soap", "webhook"],
    "rest": ["httpRequest", "api", "rest"],
    "graphql": ["graphql", "api"],
    # Data processing
    "transform": ["code", "function", "setData", "itemLists", "jq"],
    "process": ["code", "function", "itemLists", "splitInBatches"],
    "manipulate": ["setData", "code", "function", "itemLists"],
    # Control flow
    "condition": ["if", "switch", "filter", "router"],
    "loop": ["splitInBatches", "loop", "itemLists"],
    "wait": ["wait", "delay", "schedule", "cron"],
    "merge": ["merge", "join", "combine", "itemLists"],
    "split": ["splitInBatches", "itemLists", "split"],
    # Authentication
    "auth": ["oauth", "jwt", "credentials", "httpRequest"],
    "oauth": ["oauth2", "oauth", "google", "microsoft"],
    # AI
    "ai": ["openai", "anthropic", "langchain", "huggingface", "cohere"],
    "llm": ["openai", "anthropic", "langchain", "huggingface"],
    "ml": ["huggingface", "tensorflow", "pytorch"],
    # Monitoring
    "monitor": ["webhook", "cron", "schedule", "interval"],
    "schedule": ["cron", "schedule", "interval", "wait"],
    # E-commerce
    "payment": ["stripe", "paypal", "square", "shopify"],
    "ecommerce": ["shopify", "woocommerce", "magento", "stripe"],
    # CRM
    "crm": ["hubspot", "salesforce", "pipedrive", "zoho"],
    "customer": ["hubspot", "salesforce", "zendesk", "intercom"],
}

STOPWORDS = {"the", "and", "for", "with", "from", "into"}


class CapabilitySearchResult(BaseModel):
    capability: str
    nodes: list[SearchResult] = Field(default_factory=list)
    search_terms: list[str] = Field(default_factory=list)
    strategy: SearchStrategy = "not_found"

    @property
    def found(self) -> bool:
        return bool(self.nodes)


def optimized_search_terms(capability_name: str) -> list[str]:
    """Search terms derived from the capability name.

    Every optimization key contained in the name contributes its terms. When
    none match, the name's significant words and the name without spaces are
    used instead.
    """
    lower = capability_name.lower()
    terms: list[str] = []
    for key, values in SEARCH_OPTIMIZATIONS.items():
        if key in lower:
            terms.extend(values)

    if not terms:
        words = re.sub(r"[^a-z0-9\s]", "", lower).split()
        terms.extend(w for w in words if len(w) > 2 and w not in STOPWORDS)
        terms.append(re.sub(r"\s+", "", capability_name))

    return list(dict.fromkeys(terms))


def best_match(nodes: list[SearchResult]) -> Optional[SearchResult]:
    """Highest relevance wins; ties go to the earlier catalog result."""
    best: Optional[SearchResult] = None
    for node in nodes:
        if best is None or node.relevance > best.relevance:
            best = node
    return best


class GapSearch:
    """Progressive search: primary term, then alternatives, then optimized terms."""

    def __init__(self, catalog: NodeCatalog, limit: int = 20):
        self.catalog = catalog
        self.limit = limit

    async def search(self, capabilities: list[UnmatchedCapability]) -> dict[str, CapabilitySearchResult]:
        """Search for every capability concurrently, keyed by capability name."""
        if not capabilities:
            return {}
        logger.info(f"Searching for {len(capabilities)} capability gaps")

        found = await asyncio.gather(*(self.search_capability(c) for c in capabilities))
        results = {result.capability: result for result in found}

        missing = [name for name, result in results.items() if not result.found]
        logger.info(f"Gap search complete: {len(results) - len(missing)}/{len(results)} capabilities found")
        if missing:
            logger.warning(f"No nodes found for: {', '.join(missing)}")
        return results

    async def search_capability(self, capability: UnmatchedCapability) -> CapabilitySearchResult:
        terms = capability.search_terms

        if terms:
            nodes = await self._search(terms[0])
            if nodes:
                return CapabilitySearchResult(
                    capability=capability.name, nodes=nodes, search_terms=[terms[0]], strategy="primary"
                )

        for term in terms[1:]:
            nodes = await self._search(term)
            if nodes:
                return CapabilitySearchResult(
                    capability=capability.name, nodes=nodes, search_terms=[term], strategy="alternative"
                )

        optimized = optimized_search_terms(capability.name)
        for term in optimized:
            nodes = await self._search(term)
            if nodes:
                return CapabilitySearchResult(
                    capability=capability.name, nodes=nodes, search_terms=[term], strategy="optimized"
                )

        logger.debug(f"No nodes found for capability: {capability.name}")
        return CapabilitySearchResult(capability=capability.name, search_terms=[*terms, *optimized])

    async def _search(self, query: str) -> list[SearchResult]:
        try:
            return await self.catalog.search_nodes(query, limit=self.limit)
        except CatalogServiceError as e:
            if not e.retryable:
                raise
            logger.error(f"Error searching for '{query}': {e}")
            return []
