"""
Access models: employees, personas, access grants and the per-request tool context.

An AccessGrant is created and maintained by an external administrative
workflow. The core only reads it and projects it into an immutable
ToolContext together with the resolved set of visible identities.
"""

from enum import Enum
from typing import Optional, List, Dict, FrozenSet, Iterable
from pydantic import BaseModel, Field, validator


class RowScope(str, Enum):
    """Visibility policy restricting which identities' rows a caller may read."""

    OWN_ONLY = "own_only"
    OWN_AND_SUBTREE = "own_and_subtree"
    DIVISION_ONLY = "division_only"
    ALL = "all"


# Names used by older grant records
ROW_SCOPE_ALIASES = {
    "own_and_team": RowScope.OWN_AND_SUBTREE,
    "vertical_only": RowScope.DIVISION_ONLY,
}


def parse_row_scope(value) -> RowScope:
    """Parse a scope value; anything unrecognised falls back to own_only."""
    if isinstance(value, RowScope):
        return value
    if isinstance(value, dict):
        value = value.get("default")
    if not value:
        return RowScope.OWN_ONLY
    value = str(value).strip().lower()
    if value in ROW_SCOPE_ALIASES:
        return ROW_SCOPE_ALIASES[value]
    try:
        return RowScope(value)
    except ValueError:
        return RowScope.OWN_ONLY


def rm_key(employee_number: str) -> str:
    """B2B sales rows key RMs by a W-prefixed employee number."""
    employee_number = (employee_number or "").strip()
    return employee_number if employee_number.upper().startswith("W") else f"W{employee_number}"


class Employee(BaseModel):
    """Employee record behind an authenticated caller."""

    id: str = Field(..., description="Internal record id")
    employee_number: str = Field(..., description="Employee number")
    full_name: str = Field(default="", description="Display name")
    work_email: str = Field(default="", description="Work email address")
    job_title: str = Field(default="", description="Role title")
    business_unit: str = Field(default="", description="Division: B2B, B2C, PW, Corporate, ...")
    department: Optional[str] = Field(default=None, description="Department")
    reporting_manager_emp_number: Optional[str] = Field(default=None, description="Manager's employee number")
    employment_status: str = Field(default="Active", description="Employment status")

    @validator("work_email", pre=True)
    def normalise_email(cls, v):
        return (v or "").strip().lower()

    @property
    def is_active(self) -> bool:
        return (self.employment_status or "").strip().lower() != "inactive"

    @property
    def first_name(self) -> str:
        return self.full_name.split(" ")[0] if self.full_name else ""


class CapabilitySet(BaseModel):
    """Capability flags controlling tools and prompt guardrails."""

    proactive_insights: bool = False
    recommendations: bool = False
    forecasting: bool = False
    contest_strategy: bool = False
    discuss_org_structure: bool = False
    query_database: bool = False


class Persona(BaseModel):
    """Behaviour and model parameters shared by a group of grants."""

    id: str = Field(..., description="Persona id")
    name: str = Field(default="", description="Persona name")
    agent_name: Optional[str] = Field(default=None, description="Name the agent introduces itself with")
    tone: str = Field(default="professional", description="Tone key")
    output_format: str = Field(default="conversational", description="Output format key")
    system_prompt_override: Optional[str] = Field(default=None, description="Replaces the layered prompt")

    model: Optional[str] = Field(default=None, description="Primary backend model override")
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None

    capabilities: CapabilitySet = Field(default_factory=CapabilitySet, description="Default capabilities")


class QueryDatabaseConfig(BaseModel):
    """Per-grant guardrails for the query_database tool."""

    result_limit: int = Field(default=200, description="Row limit injected into queries")
    allow_aggregates: bool = Field(default=True, description="Allow GROUP BY and aggregate functions")
    allow_joins: bool = Field(default=False, description="Allow JOIN")
    blocked_columns: Dict[str, List[str]] = Field(default_factory=dict, description="Columns stripped per table")


class AccessGrant(BaseModel):
    """Effective data-visibility scope and capabilities for one employee."""

    employee_id: str = Field(..., description="Employee record id")
    division: str = Field(default="", description="Caller's division / business unit")
    row_scope: RowScope = Field(default=RowScope.OWN_ONLY, description="Row visibility policy")
    capabilities: CapabilitySet = Field(default_factory=CapabilitySet)
    allowed_tables: List[str] = Field(default_factory=list, description="Empty means all data tables")
    denied_tables: List[str] = Field(default_factory=list)
    access_description: Optional[str] = None
    no_access_description: Optional[str] = None
    query_db_config: QueryDatabaseConfig = Field(default_factory=QueryDatabaseConfig)
    persona: Optional[Persona] = None
    is_active: bool = True

    @validator("row_scope", pre=True)
    def coerce_scope(cls, v):
        return parse_row_scope(v)

    def table_allowed(self, table: str) -> bool:
        if table in self.denied_tables:
            return False
        return not self.allowed_tables or table in self.allowed_tables


class VisibleIdentities(BaseModel):
    """Identities whose rows a caller may see, or everyone when scope is all."""

    everyone: bool = False
    employee_numbers: FrozenSet[str] = frozenset()
    work_emails: FrozenSet[str] = frozenset()
    employee_ids: FrozenSet[str] = frozenset()
    rm_keys: FrozenSet[str] = frozenset()

    class Config:
        frozen = True

    @classmethod
    def all(cls) -> "VisibleIdentities":
        return cls(everyone=True)

    @classmethod
    def of(cls, employees: Iterable[Employee]) -> "VisibleIdentities":
        employees = list(employees)
        return cls(
            employee_numbers=frozenset(e.employee_number for e in employees),
            work_emails=frozenset(e.work_email for e in employees if e.work_email),
            employee_ids=frozenset(e.id for e in employees),
            rm_keys=frozenset(rm_key(e.employee_number) for e in employees),
        )

    def __len__(self) -> int:
        return len(self.employee_numbers)

    def includes_number(self, employee_number: Optional[str]) -> bool:
        if self.everyone:
            return True
        if not employee_number:
            return False
        return rm_key(employee_number) in self.rm_keys

    def includes_email(self, email: Optional[str]) -> bool:
        if self.everyone:
            return True
        return bool(email) and email.strip().lower() in self.work_emails

    def includes_employee_id(self, employee_id: Optional[str]) -> bool:
        if self.everyone:
            return True
        return bool(employee_id) and employee_id in self.employee_ids


class ToolContext(BaseModel):
    """Immutable per-request projection of a grant plus its visible identities."""

    employee: Employee
    grant: AccessGrant
    visible: VisibleIdentities

    class Config:
        frozen = True

    @property
    def row_scope(self) -> RowScope:
        return self.grant.row_scope

    @property
    def capabilities(self) -> CapabilitySet:
        return self.grant.capabilities
