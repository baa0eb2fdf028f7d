"""Deterministic keyword routing used when no LLM plan is available."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from mcpbridge.mcp.models import ServerCatalog, ServerCatalogEntry
from mcpbridge.routing.plan import RoutingPlan, empty_plan

logger = logging.getLogger(__name__)

_TOKEN = re.compile(r"[a-z0-9_./~-]+")
_PATH_AFTER_VERB = re.compile(r"\b(?:read|open|cat|show|list|ls|tree)\s+([^\s\"']+)", re.IGNORECASE)
_QUOTED = re.compile(r"[\"']([^\"']+)[\"']")

FIRST_TOOL_CONFIDENCE = 0.2


def normalize(query: str) -> str:
    tokens = (token.rstrip(".") for token in _TOKEN.findall(query.lower()))
    return " ".join(token for token in tokens if token)


def mentions(normalized: str, phrases: tuple[str, ...]) -> bool:
    """Whole-word or whole-phrase match against a normalized query."""
    padded = f" {normalized} "
    return any(f" {phrase} " in padded for phrase in phrases)


def _looks_like_path(candidate: str) -> bool:
    return "/" in candidate or "." in candidate or candidate.startswith("~")


def extract_path(query: str) -> str | None:
    match = _PATH_AFTER_VERB.search(query)
    if match and _looks_like_path(match.group(1)):
        return match.group(1).rstrip(".,;:?!")
    for token in query.split():
        token = token.strip("\"'`,;:?!")
        if _looks_like_path(token) and not token.endswith("."):
            return token
    return None


def extract_search_terms(query: str, stop_phrases: tuple[str, ...]) -> str:
    quoted = _QUOTED.search(query)
    if quoted:
        return quoted.group(1).strip()
    text = query.strip()
    lowered = text.lower()
    for phrase in sorted(stop_phrases, key=len, reverse=True):
        index = lowered.find(phrase)
        if index != -1:
            remainder = text[index + len(phrase) :].strip(" :,?")
            if remainder:
                return remainder
    return text


@dataclass(frozen=True, slots=True)
class ToolChoice:
    """Tool a rule prefers, with the phrases that select it."""

    tool: str
    phrases: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class HeuristicRule:
    """One keyword rule: trigger phrases, preferred tools, fixed confidence."""

    name: str
    intent: str
    triggers: tuple[str, ...]
    choices: tuple[ToolChoice, ...]
    confidence: float
    parameters: Callable[[str, str], dict[str, Any]]

    def matches(self, normalized: str) -> bool:
        return mentions(normalized, self.triggers)

    def ranked_tools(self, normalized: str) -> list[str]:
        """Preferred tool names: phrase-selected first, then the rule's default order."""
        selected = [choice.tool for choice in self.choices if mentions(normalized, choice.phrases)]
        rest = [choice.tool for choice in self.choices if choice.tool not in selected]
        return [*selected, *rest]


def _git_parameters(query: str, tool: str) -> dict[str, Any]:
    path = extract_path(query)
    return {"repo_path": path} if path else {}


def _search_parameters(query: str, tool: str) -> dict[str, Any]:
    return {"query": extract_search_terms(query, WEB_PHRASES)}


def _database_parameters(query: str, tool: str) -> dict[str, Any]:
    if tool in ("list_tables", "list_databases"):
        return {}
    return {"query": query.strip()}


def _filesystem_parameters(query: str, tool: str) -> dict[str, Any]:
    path = extract_path(query)
    if tool == "search_files":
        pattern = extract_search_terms(query, ("search for", "find", "locate"))
        return {"path": ".", "pattern": pattern}
    return {"path": path or "."}


WEB_PHRASES = (
    "search the web for",
    "search the web",
    "search online for",
    "look up",
    "lookup",
    "google",
    "search for",
    "search",
)

RULES: tuple[HeuristicRule, ...] = (
    HeuristicRule(
        name="version_control",
        intent="Version control operation",
        triggers=("git", "commit", "commits", "branch", "diff", "repository", "repo", "staged"),
        choices=(
            ToolChoice("git_diff", ("diff", "differences", "compare changes")),
            ToolChoice("git_log", ("log", "history", "commits", "recent commits", "commit log")),
            ToolChoice("git_status", ("status", "changes", "state")),
            ToolChoice("git_branch", ("branch", "branches")),
        ),
        confidence=0.7,
        parameters=_git_parameters,
    ),
    HeuristicRule(
        name="web_search",
        intent="Web search",
        triggers=(
            "web",
            "online",
            "internet",
            "google",
            "news",
            "look up",
            "lookup",
            "search the web",
            "search online",
            "find information",
        ),
        choices=(
            ToolChoice("web_search"),
            ToolChoice("brave_web_search"),
            ToolChoice("search"),
        ),
        confidence=0.6,
        parameters=_search_parameters,
    ),
    HeuristicRule(
        name="database",
        intent="Database query",
        triggers=("database", "db", "sql", "table", "tables", "select", "rows"),
        choices=(
            ToolChoice("list_tables", ("list tables", "show tables", "tables")),
            ToolChoice("read_query", ("select", "query")),
            ToolChoice("query"),
            ToolChoice("execute_query"),
        ),
        confidence=0.6,
        parameters=_database_parameters,
    ),
    HeuristicRule(
        name="filesystem",
        intent="Filesystem operation",
        triggers=(
            "file",
            "files",
            "directory",
            "directories",
            "folder",
            "read",
            "write",
            "list",
            "ls",
            "cat",
            "open",
            "tree",
            "search",
            "find",
        ),
        choices=(
            ToolChoice("read_file", ("read", "open", "cat", "contents")),
            ToolChoice("write_file", ("write", "save")),
            ToolChoice("search_files", ("search", "find", "locate")),
            ToolChoice("directory_tree", ("tree", "structure", "hierarchy")),
            ToolChoice("list_directory", ("list", "ls", "directory", "folder")),
        ),
        confidence=0.5,
        parameters=_filesystem_parameters,
    ),
    HeuristicRule(
        name="general_search",
        intent="Search",
        triggers=("search", "find"),
        choices=(
            ToolChoice("web_search"),
            ToolChoice("brave_web_search"),
            ToolChoice("search"),
        ),
        confidence=0.5,
        parameters=_search_parameters,
    ),
)


def _find_tool(
    catalog: ServerCatalog,
    tool_names: list[str],
) -> tuple[ServerCatalogEntry, str] | None:
    for tool_name in tool_names:
        for entry in catalog.connected():
            if entry.find_tool(tool_name) is not None:
                return entry, tool_name
    return None


def heuristic_plan(query: str, catalog: ServerCatalog) -> RoutingPlan:
    """Route by ordered keyword rules; first connected tool at low confidence otherwise."""
    normalized = normalize(query)
    for rule in RULES:
        if not rule.matches(normalized):
            continue
        found = _find_tool(catalog, rule.ranked_tools(normalized))
        if found is None:
            continue
        entry, tool_name = found
        logger.debug("Heuristic rule %s matched %s:%s", rule.name, entry.server_id, tool_name)
        return RoutingPlan(
            intent=rule.intent,
            selected_server=entry.server_id,
            selected_tool=tool_name,
            parameters=rule.parameters(query, tool_name),
            reasoning=f"Fallback heuristic analysis ({rule.name} keywords)",
            confidence=rule.confidence,
        )
    for entry in catalog.connected():
        if entry.tools:
            tool = entry.tools[0]
            return RoutingPlan(
                intent="Unknown",
                selected_server=entry.server_id,
                selected_tool=tool.name,
                parameters={},
                reasoning="No keyword rule matched; using the first available tool",
                confidence=FIRST_TOOL_CONFIDENCE,
            )
    return empty_plan()
