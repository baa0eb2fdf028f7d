"""Query router: LLM planning with validated output and heuristic fallback."""

from __future__ import annotations

import logging

from mcpbridge.mcp.discovery import ServerDiscovery
from mcpbridge.mcp.errors import BridgeError
from mcpbridge.mcp.manager import ConnectionManager
from mcpbridge.mcp.models import ServerCatalog, ToolResult
from mcpbridge.routing.heuristics import heuristic_plan
from mcpbridge.routing.llm import LLMClient, build_routing_prompt
from mcpbridge.routing.plan import RoutingPlan, parse_llm_response, validate_plan

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 0.3
CLARIFICATION_MESSAGE = (
    "I could not determine how to help with that request. "
    "Try naming the file, repository, or search terms more specifically."
)


def needs_clarification(plan: RoutingPlan, threshold: float = DEFAULT_CONFIDENCE_THRESHOLD) -> bool:
    """Whether the plan is too weak to execute."""
    return plan.is_empty or plan.confidence < threshold


class QueryRouter:
    """Turn free-form text into a RoutingPlan against the current catalog."""

    def __init__(
        self,
        discovery: ServerDiscovery,
        *,
        llm_client: LLMClient | None = None,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    ) -> None:
        self.discovery = discovery
        self.llm_client = llm_client
        self.confidence_threshold = confidence_threshold
        self._catalog: ServerCatalog | None = None

    @property
    def catalog(self) -> ServerCatalog | None:
        return self._catalog

    def update_catalog(self, catalog: ServerCatalog) -> None:
        logger.info("Updating router catalog with %d server(s)", len(catalog))
        self._catalog = catalog

    async def ensure_catalog(self) -> ServerCatalog:
        if self._catalog is None or self.discovery.should_rediscover(self._catalog):
            self._catalog = await self.discovery.get_catalog()
        return self._catalog

    async def analyze_query(self, query: str) -> RoutingPlan:
        logger.info("Analyzing query: %r", query)
        catalog = await self.ensure_catalog()
        if self.llm_client is not None:
            try:
                reply = await self.llm_client.complete(build_routing_prompt(query, catalog))
                plan = parse_llm_response(reply, catalog)
            except BridgeError as exc:
                logger.warning("LLM routing failed, using heuristics: %s", exc)
            else:
                logger.info(
                    "Routed to %s:%s (confidence: %.2f)",
                    plan.selected_server,
                    plan.selected_tool,
                    plan.confidence,
                )
                return plan
        plan = heuristic_plan(query, catalog)
        logger.info(
            "Heuristic route %s:%s (confidence: %.2f)",
            plan.selected_server or "-",
            plan.selected_tool or "-",
            plan.confidence,
        )
        return plan

    def needs_clarification(self, plan: RoutingPlan) -> bool:
        return needs_clarification(plan, self.confidence_threshold)

    async def execute(self, plan: RoutingPlan, manager: ConnectionManager) -> ToolResult:
        """Re-validate against the current catalog, then run the planned call."""
        catalog = await self.ensure_catalog()
        validate_plan(plan, catalog)
        return await manager.call_tool(plan.selected_server, plan.selected_tool, plan.parameters)
