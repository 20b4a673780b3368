"""
Sales data repository.

Typed read queries over the employee directory, the B2B and B2C sales tables
and performance targets. The Cosmos DB implementation is used in deployed
environments; the in-memory implementation backs dev mode and tests.
Neither applies access scope: every tool handler filters the rows it returns.
"""

from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any, Iterable, NamedTuple
import structlog

from fundsagent.clients.cosmos_client import CosmosDBClient
from fundsagent.config.settings import CosmosDBSettings
from fundsagent.models.access import Employee
from fundsagent.models.sales import B2BSalesRow, B2CSalesRow, SalesPeriod, SalesTarget

logger = structlog.get_logger(__name__)


class TableInfo(NamedTuple):
    """A data table reachable through query_database and the column naming its owner."""

    identity_field: str
    identity_kind: str  # employee_number, rm_key, email or employee_id


B2B_MTD_TABLE = "b2b_sales_current_month"
B2B_YTD_TABLE = "btb_sales_YTD_minus_current_month"
B2C_TABLE = "b2c"
EMPLOYEES_TABLE = "employees"
TARGETS_TABLE = "targets"

DATA_TABLES: Dict[str, TableInfo] = {
    EMPLOYEES_TABLE: TableInfo("employee_number", "employee_number"),
    B2B_MTD_TABLE: TableInfo("rm_emp_id", "rm_key"),
    B2B_YTD_TABLE: TableInfo("rm_emp_id", "rm_key"),
    B2C_TABLE: TableInfo("advisor_email", "email"),
    TARGETS_TABLE: TableInfo("employee_id", "employee_id"),
}

_SYSTEM_FIELDS = ("_rid", "_self", "_etag", "_attachments", "_ts")


def strip_system_fields(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in doc.items() if k not in _SYSTEM_FIELDS}


def b2b_table(period: SalesPeriod) -> str:
    return B2B_YTD_TABLE if period == SalesPeriod.YTD else B2B_MTD_TABLE


class SalesDataRepository(ABC):
    """Read interface the tool handlers consume."""

    @abstractmethod
    async def list_employees(self, active_only: bool = True) -> List[Employee]:
        """Full directory; the identity graph is built from this."""

    @abstractmethod
    async def find_employee(
        self, employee_number: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[Employee]:
        """Resolve a caller by employee number or work email."""

    @abstractmethod
    async def get_employees(self, employee_numbers: Iterable[str]) -> List[Employee]:
        ...

    @abstractmethod
    async def search_employees(self, query: str, limit: int = 5) -> List[Employee]:
        """Active employees whose name or number contains `query` (case-insensitive)."""

    @abstractmethod
    async def b2b_rows(
        self,
        period: SalesPeriod,
        rm_keys: Optional[Iterable[str]] = None,
        zone: Optional[str] = None,
    ) -> List[B2BSalesRow]:
        ...

    @abstractmethod
    async def b2c_rows(self, emails: Optional[Iterable[str]] = None) -> List[B2CSalesRow]:
        ...

    @abstractmethod
    async def latest_target(
        self, employee_id: str, business_unit: str, target_type: str = "monthly"
    ) -> Optional[SalesTarget]:
        ...

    @abstractmethod
    async def run_query(
        self, table: str, query: str, parameters: Optional[List[Dict[str, Any]]] = None
    ) -> List[Dict[str, Any]]:
        """Execute a validated read-only query against one data table."""


class CosmosSalesDataRepository(SalesDataRepository):
    """Sales data stored as one Cosmos DB container per table."""

    def __init__(self, cosmos_client: CosmosDBClient, settings: CosmosDBSettings):
        self.client = cosmos_client
        self.settings = settings
        self.containers = {
            EMPLOYEES_TABLE: settings.employees_container,
            B2B_MTD_TABLE: settings.b2b_mtd_container,
            B2B_YTD_TABLE: settings.b2b_ytd_container,
            B2C_TABLE: settings.b2c_container,
            TARGETS_TABLE: settings.targets_container,
        }
        logger.info("Initialized sales data repository", database=settings.database_name)

    async def _query(self, table: str, query: str, parameters=None) -> List[Dict[str, Any]]:
        docs = await self.client.query_items(self.containers[table], query, parameters)
        return [strip_system_fields(d) for d in docs]

    async def list_employees(self, active_only: bool = True) -> List[Employee]:
        query = "SELECT * FROM c"
        if active_only:
            query += " WHERE c.employment_status != 'Inactive'"
        return [Employee(**d) for d in await self._query(EMPLOYEES_TABLE, query)]

    async def find_employee(self, employee_number=None, email=None) -> Optional[Employee]:
        if employee_number:
            query = "SELECT TOP 1 * FROM c WHERE c.employee_number = @value"
            value = employee_number.strip()
        elif email:
            query = "SELECT TOP 1 * FROM c WHERE LOWER(c.work_email) = @value"
            value = email.strip().lower()
        else:
            return None
        docs = await self._query(EMPLOYEES_TABLE, query, [{"name": "@value", "value": value}])
        return Employee(**docs[0]) if docs else None

    async def get_employees(self, employee_numbers: Iterable[str]) -> List[Employee]:
        numbers = sorted(set(employee_numbers))
        if not numbers:
            return []
        docs = await self._query(
            EMPLOYEES_TABLE,
            "SELECT * FROM c WHERE ARRAY_CONTAINS(@numbers, c.employee_number)",
            [{"name": "@numbers", "value": numbers}],
        )
        return [Employee(**d) for d in docs]

    async def search_employees(self, query: str, limit: int = 5) -> List[Employee]:
        docs = await self._query(
            EMPLOYEES_TABLE,
            "SELECT TOP @limit * FROM c WHERE c.employment_status != 'Inactive' "
            "AND (CONTAINS(c.full_name, @q, true) OR CONTAINS(c.employee_number, @q, true))",
            [{"name": "@q", "value": query}, {"name": "@limit", "value": limit}],
        )
        return [Employee(**d) for d in docs]

    async def b2b_rows(self, period, rm_keys=None, zone=None) -> List[B2BSalesRow]:
        clauses = []
        parameters = []
        if rm_keys is not None:
            clauses.append("ARRAY_CONTAINS(@keys, c.rm_emp_id)")
            parameters.append({"name": "@keys", "value": sorted(set(rm_keys))})
        if zone:
            clauses.append("CONTAINS(c.zone, @zone, true)")
            parameters.append({"name": "@zone", "value": zone})
        query = "SELECT * FROM c"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        return [B2BSalesRow(**d) for d in await self._query(b2b_table(period), query, parameters)]

    async def b2c_rows(self, emails=None) -> List[B2CSalesRow]:
        if emails is None:
            docs = await self._query(B2C_TABLE, "SELECT * FROM c")
        else:
            docs = await self._query(
                B2C_TABLE,
                "SELECT * FROM c WHERE ARRAY_CONTAINS(@emails, c.advisor_email)",
                [{"name": "@emails", "value": sorted({e.strip().lower() for e in emails})}],
            )
        return [B2CSalesRow(**d) for d in docs]

    async def latest_target(self, employee_id, business_unit, target_type="monthly") -> Optional[SalesTarget]:
        docs = await self._query(
            TARGETS_TABLE,
            "SELECT TOP 1 * FROM c WHERE c.employee_id = @id AND c.business_unit = @bu "
            "AND c.target_type = @type ORDER BY c.period_start DESC",
            [
                {"name": "@id", "value": employee_id},
                {"name": "@bu", "value": business_unit},
                {"name": "@type", "value": target_type},
            ],
        )
        return SalesTarget(**docs[0]) if docs else None

    async def run_query(self, table, query, parameters=None) -> List[Dict[str, Any]]:
        return await self._query(table, query, parameters)


class InMemorySalesDataRepository(SalesDataRepository):
    """
    In-process sales data for dev mode and tests.

    `run_query` cannot evaluate SQL; it returns the documents of the named
    table and relies on the caller's post-filters (visibility, blocked
    columns, row cap) like the deployed path does.
    """

    def __init__(
        self,
        employees: Iterable[Employee] = (),
        b2b_mtd: Iterable[B2BSalesRow] = (),
        b2b_ytd: Iterable[B2BSalesRow] = (),
        b2c: Iterable[B2CSalesRow] = (),
        targets: Iterable[SalesTarget] = (),
    ):
        self.employees = list(employees)
        self.b2b = {SalesPeriod.MTD: list(b2b_mtd), SalesPeriod.YTD: list(b2b_ytd)}
        self.b2c = list(b2c)
        self.targets = list(targets)
        self.queries: List[Dict[str, Any]] = []

    async def list_employees(self, active_only: bool = True) -> List[Employee]:
        return [e for e in self.employees if e.is_active or not active_only]

    async def find_employee(self, employee_number=None, email=None) -> Optional[Employee]:
        for employee in self.employees:
            if employee_number and employee.employee_number == employee_number.strip():
                return employee
            if not employee_number and email and employee.work_email == email.strip().lower():
                return employee
        return None

    async def get_employees(self, employee_numbers: Iterable[str]) -> List[Employee]:
        wanted = set(employee_numbers)
        return [e for e in self.employees if e.employee_number in wanted]

    async def search_employees(self, query: str, limit: int = 5) -> List[Employee]:
        needle = query.strip().lower()
        matches = [
            e for e in self.employees
            if e.is_active and (needle in e.full_name.lower() or needle in e.employee_number.lower())
        ]
        return matches[:limit]

    async def b2b_rows(self, period, rm_keys=None, zone=None) -> List[B2BSalesRow]:
        rows = self.b2b[period]
        if rm_keys is not None:
            keys = set(rm_keys)
            rows = [r for r in rows if r.rm_emp_id in keys]
        if zone:
            rows = [r for r in rows if zone.lower() in r.zone.lower()]
        return list(rows)

    async def b2c_rows(self, emails=None) -> List[B2CSalesRow]:
        if emails is None:
            return list(self.b2c)
        wanted = {e.strip().lower() for e in emails}
        return [r for r in self.b2c if r.advisor_email in wanted]

    async def latest_target(self, employee_id, business_unit, target_type="monthly") -> Optional[SalesTarget]:
        candidates = [
            t for t in self.targets
            if t.employee_id == employee_id and t.business_unit == business_unit and t.target_type == target_type
        ]
        return max(candidates, key=lambda t: t.period_start) if candidates else None

    async def run_query(self, table, query, parameters=None) -> List[Dict[str, Any]]:
        self.queries.append({"table": table, "query": query, "parameters": parameters or []})
        source = {
            EMPLOYEES_TABLE: self.employees,
            B2B_MTD_TABLE: self.b2b[SalesPeriod.MTD],
            B2B_YTD_TABLE: self.b2b[SalesPeriod.YTD],
            B2C_TABLE: self.b2c,
            TARGETS_TABLE: self.targets,
        }[table]
        return [row.model_dump(mode="json") for row in source]
