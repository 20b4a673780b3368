"""
Tool registry and executor.

The catalogue is a closed enum of tool names mapped to handler classes. The
mapping is checked for completeness at import time, so adding a name without
a handler fails at startup rather than on the first call. Execution never
raises: unknown names, hidden tools, malformed arguments and handler
failures all come back as `{"error": ...}` evidence.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Type
from pydantic import BaseModel, Field, ValidationError
import structlog

from fundsagent.exceptions import ToolExecutionError
from fundsagent.models.access import AccessGrant, RowScope, ToolContext
from fundsagent.models.message import ToolCall, ToolResult
from fundsagent.repositories.sales_repository import SalesDataRepository
from fundsagent.services.access_service import AccessService
from fundsagent.services.query_guard import QueryGuard
from fundsagent.services.tool_handlers import (
    CompanySummaryTool,
    EmployeeInfoTool,
    MyPerformanceTool,
    OrgStructureTool,
    ProactiveInsightsTool,
    QueryDatabaseTool,
    RankingsTool,
    TeamPerformanceTool,
    ToolHandler,
)

logger = structlog.get_logger(__name__)


class ToolName(str, Enum):
    GET_MY_PERFORMANCE = "get_my_performance"
    GET_TEAM_PERFORMANCE = "get_team_performance"
    GET_RANKINGS = "get_rankings"
    GET_EMPLOYEE_INFO = "get_employee_info"
    GET_ORG_STRUCTURE = "get_org_structure"
    GET_PROACTIVE_INSIGHTS = "get_proactive_insights"
    GET_COMPANY_SUMMARY = "get_company_summary"
    QUERY_DATABASE = "query_database"


TOOL_HANDLERS: Dict[ToolName, Type[ToolHandler]] = {
    ToolName.GET_MY_PERFORMANCE: MyPerformanceTool,
    ToolName.GET_TEAM_PERFORMANCE: TeamPerformanceTool,
    ToolName.GET_RANKINGS: RankingsTool,
    ToolName.GET_EMPLOYEE_INFO: EmployeeInfoTool,
    ToolName.GET_ORG_STRUCTURE: OrgStructureTool,
    ToolName.GET_PROACTIVE_INSIGHTS: ProactiveInsightsTool,
    ToolName.GET_COMPANY_SUMMARY: CompanySummaryTool,
    ToolName.QUERY_DATABASE: QueryDatabaseTool,
}

_unhandled = set(ToolName) - set(TOOL_HANDLERS)
if _unhandled:
    raise RuntimeError(f"Tools without a handler: {sorted(t.value for t in _unhandled)}")


def _json_schema(model: Type[BaseModel]) -> Dict[str, Any]:
    """Argument schema as sent to the backends, without pydantic titles."""

    def strip(node):
        if isinstance(node, dict):
            return {k: strip(v) for k, v in node.items() if k != "title"}
        if isinstance(node, list):
            return [strip(v) for v in node]
        return node

    schema = strip(model.model_json_schema())
    schema.setdefault("properties", {})
    schema.setdefault("required", [])
    return schema


class ToolSpec(BaseModel):
    """Name, description and argument schema of one catalogue entry."""

    name: ToolName
    description: str
    parameters: Dict[str, Any] = Field(default_factory=dict)

    def to_openai(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {"name": self.name.value, "description": self.description, "parameters": self.parameters},
        }


def available_tools(grant: AccessGrant, exclude: Iterable[ToolName] = ()) -> List[ToolName]:
    """Tool names a grant may use, in catalogue order."""
    excluded = set(exclude)
    capabilities = grant.capabilities
    names = []
    for name in ToolName:
        if name in excluded:
            continue
        if name == ToolName.GET_ORG_STRUCTURE and not capabilities.discuss_org_structure:
            continue
        if name == ToolName.GET_PROACTIVE_INSIGHTS and not capabilities.proactive_insights:
            continue
        if name == ToolName.QUERY_DATABASE and not capabilities.query_database:
            continue
        if name == ToolName.GET_COMPANY_SUMMARY and grant.row_scope != RowScope.ALL:
            continue
        names.append(name)
    return names


class ToolRegistry:
    """Lists the catalogue for a grant and executes calls under a ToolContext."""

    def __init__(
        self,
        sales_repository: SalesDataRepository,
        access_service: AccessService,
        query_guard: QueryGuard,
    ):
        self.handlers: Dict[ToolName, ToolHandler] = {
            name: handler_cls(sales_repository, access_service, query_guard)
            for name, handler_cls in TOOL_HANDLERS.items()
        }
        self.specs: Dict[ToolName, ToolSpec] = {
            name: ToolSpec(name=name, description=handler.description, parameters=_json_schema(handler.Arguments))
            for name, handler in self.handlers.items()
        }

    def list_tools(self, grant: AccessGrant, exclude: Iterable[ToolName] = ()) -> List[ToolSpec]:
        return [self.specs[name] for name in available_tools(grant, exclude)]

    def definitions(self, grant: AccessGrant, exclude: Iterable[ToolName] = ()) -> List[Dict[str, Any]]:
        """OpenAI function-tool definitions for the grant."""
        return [spec.to_openai() for spec in self.list_tools(grant, exclude)]

    async def execute(self, call: ToolCall, ctx: ToolContext, exclude: Iterable[ToolName] = ()) -> ToolResult:
        """Run one call. Always returns a result; failures are `{"error": ...}` payloads."""
        started = time.perf_counter()
        payload = await self._dispatch(call, ctx, exclude)
        logger.info(
            "Tool executed",
            tool=call.name,
            employee_id=ctx.employee.id,
            success="error" not in payload,
            error=payload.get("error"),
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return ToolResult(tool_call_id=call.id, name=call.name, arguments=call.arguments, payload=payload)

    async def execute_all(
        self,
        calls: List[ToolCall],
        ctx: ToolContext,
        exclude: Iterable[ToolName] = (),
        parallel: bool = False,
    ) -> List[ToolResult]:
        """Run every call of one round; results keep the order of `calls`."""
        exclude = tuple(exclude)
        if parallel and len(calls) > 1:
            return list(await asyncio.gather(*(self.execute(call, ctx, exclude) for call in calls)))
        results = []
        for call in calls:
            results.append(await self.execute(call, ctx, exclude))
        return results

    async def _dispatch(self, call: ToolCall, ctx: ToolContext, exclude: Iterable[ToolName]) -> Dict[str, Any]:
        try:
            name = ToolName(call.name)
        except ValueError:
            return {"error": f"Unknown tool: {call.name}"}

        if name not in available_tools(ctx.grant, exclude):
            return {"error": f"Tool {name.value} is not available at your access level."}
        if call.argument_error:
            return {"error": f"Invalid arguments for {name.value}: {call.argument_error}"}

        handler = self.handlers[name]
        try:
            args = handler.Arguments(**call.arguments)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}" for err in e.errors()
            )
            return {"error": f"Invalid arguments for {name.value}: {problems}"}

        try:
            result = await handler.run(args, ctx)
        except ToolExecutionError as e:
            return {"error": e.message}
        except Exception as e:
            logger.error("Tool failed", tool=name.value, employee_id=ctx.employee.id, error=str(e))
            return {"error": f"{name.value} failed: {e}"}
        return result if isinstance(result, dict) else {"result": result}


def build_tool_registry(
    sales_repository: SalesDataRepository, access_service: AccessService, query_guard: Optional[QueryGuard] = None
) -> ToolRegistry:
    return ToolRegistry(sales_repository, access_service, query_guard or QueryGuard(access_service.settings))
