"""
Access resolver.

Turns a caller identity into an AccessGrant and the finite set of identities
whose rows the caller may read. Subtree expansion is an iterative
breadth-first walk over an index-based adjacency list with a visited set, so
deep hierarchies cannot exhaust the stack and cyclic manager data terminates.
"""

import asyncio
import time
from collections import deque
from typing import Optional, Dict, Any, List
import structlog

from fundsagent.config.settings import AccessSettings
from fundsagent.exceptions import AuthorizationError
from fundsagent.models.access import AccessGrant, Employee, RowScope, ToolContext, VisibleIdentities
from fundsagent.repositories.access_repository import AccessRepository
from fundsagent.repositories.sales_repository import SalesDataRepository

logger = structlog.get_logger(__name__)


class IdentityGraph:
    """Manager -> direct reports adjacency over active employees, indexed by position."""

    def __init__(self, employees: List[Employee]):
        self.employees: List[Employee] = []
        self._index: Dict[str, int] = {}
        for employee in employees:
            if employee.employee_number in self._index:
                continue
            self._index[employee.employee_number] = len(self.employees)
            self.employees.append(employee)

        self._reports: List[List[int]] = [[] for _ in self.employees]
        for position, employee in enumerate(self.employees):
            manager = self._index.get(employee.reporting_manager_emp_number or "")
            if manager is not None and manager != position:
                self._reports[manager].append(position)

    def __contains__(self, employee_number: str) -> bool:
        return employee_number in self._index

    def __len__(self) -> int:
        return len(self.employees)

    def get(self, employee_number: str) -> Optional[Employee]:
        position = self._index.get(employee_number)
        return self.employees[position] if position is not None else None

    def direct_reports(self, employee_number: str) -> List[Employee]:
        position = self._index.get(employee_number)
        if position is None:
            return []
        return [self.employees[i] for i in self._reports[position]]

    def subtree(self, employee_number: str, max_depth: Optional[int] = None) -> List[Employee]:
        """The employee and every direct or indirect report, each exactly once."""
        root = self._index.get(employee_number)
        if root is None:
            return []
        visited = {root}
        order = [root]
        queue = deque([(root, 0)])
        while queue:
            position, depth = queue.popleft()
            if max_depth is not None and depth >= max_depth:
                continue
            for child in self._reports[position]:
                if child in visited:
                    continue
                visited.add(child)
                order.append(child)
                queue.append((child, depth + 1))
        return [self.employees[i] for i in order]


class AccessService:
    """
    Resolves callers, grants and visible identity sets.

    The identity graph is read-only per request and cached for a short TTL
    across requests.
    """

    def __init__(
        self,
        sales_repository: SalesDataRepository,
        access_repository: AccessRepository,
        settings: AccessSettings,
    ):
        self.sales = sales_repository
        self.access = access_repository
        self.settings = settings
        self._graph: Optional[IdentityGraph] = None
        self._graph_loaded_at = 0.0
        self._graph_lock = asyncio.Lock()

    async def resolve_caller(self, claims: Dict[str, Any]) -> Employee:
        """Map identity claims to an employee record."""
        employee_number = claims.get("employee_number") or claims.get("employee_id")
        email = claims.get("email") or claims.get("preferred_username") or claims.get("upn")
        employee = None
        if employee_number or email:
            employee = await self.sales.find_employee(employee_number=employee_number, email=email)
        if employee is None:
            logger.warning("Caller could not be resolved", employee_number=employee_number, email=email)
            raise AuthorizationError("Employee record not found", identified=False)
        return employee

    async def resolve_scope(self, employee: Employee) -> AccessGrant:
        grant = await self.access.get_grant(employee)
        if grant is None or not grant.is_active:
            raise AuthorizationError("FundsAgent is not enabled for your account. Contact your administrator.")
        logger.info(
            "Resolved access grant",
            employee_number=employee.employee_number,
            row_scope=grant.row_scope.value,
            persona=grant.persona.id if grant.persona else None,
        )
        return grant

    async def identity_graph(self) -> IdentityGraph:
        async with self._graph_lock:
            expired = time.monotonic() - self._graph_loaded_at > self.settings.identity_graph_ttl_seconds
            if self._graph is None or expired:
                employees = await self.sales.list_employees(active_only=True)
                self._graph = IdentityGraph(employees)
                self._graph_loaded_at = time.monotonic()
                logger.debug("Loaded identity graph", employees=len(self._graph))
            return self._graph

    def invalidate(self) -> None:
        self._graph = None

    async def expand_visible_identities(self, employee: Employee, row_scope: RowScope) -> VisibleIdentities:
        """Identities the caller may see under `row_scope`; fails closed to the caller alone."""
        if row_scope == RowScope.ALL:
            return VisibleIdentities.all()
        if row_scope == RowScope.OWN_ONLY:
            return VisibleIdentities.of([employee])

        graph = await self.identity_graph()
        if employee.employee_number not in graph:
            logger.warning(
                "Caller missing from identity graph, restricting to own rows",
                employee_number=employee.employee_number,
            )
            return VisibleIdentities.of([employee])

        members = graph.subtree(employee.employee_number)
        if row_scope == RowScope.DIVISION_ONLY:
            division = graph.get(employee.employee_number).business_unit
            members = [m for m in members if m.business_unit == division]
        return VisibleIdentities.of(members)

    async def build_tool_context(self, employee: Employee, grant: AccessGrant) -> ToolContext:
        visible = await self.expand_visible_identities(employee, grant.row_scope)
        return ToolContext(employee=employee, grant=grant, visible=visible)
