"""
Access grant repository.

Grant and persona documents are maintained by the administrative workflow.
This repository only reads them and composes the effective AccessGrant:
persona capabilities are the defaults, per-grant overrides win.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, Iterable
import structlog

from fundsagent.clients.cosmos_client import CosmosDBClient
from fundsagent.config.settings import CosmosDBSettings
from fundsagent.models.access import AccessGrant, CapabilitySet, Employee, Persona, QueryDatabaseConfig
from fundsagent.repositories.sales_repository import strip_system_fields

logger = structlog.get_logger(__name__)


def compose_grant(
    employee: Employee,
    grant_doc: Dict[str, Any],
    persona_doc: Optional[Dict[str, Any]] = None,
) -> AccessGrant:
    """Build the effective grant from a grant document and its persona document."""
    persona = Persona(**strip_system_fields(persona_doc)) if persona_doc else None

    capabilities = (persona.capabilities if persona else CapabilitySet()).model_dump()
    for name, value in (grant_doc.get("override_capabilities") or {}).items():
        if name in capabilities and value is not None:
            capabilities[name] = bool(value)
    if grant_doc.get("can_query_database") is not None:
        capabilities["query_database"] = bool(grant_doc["can_query_database"])

    return AccessGrant(
        employee_id=employee.id,
        division=employee.business_unit,
        row_scope=grant_doc.get("row_scope"),
        capabilities=CapabilitySet(**capabilities),
        allowed_tables=grant_doc.get("allowed_tables") or [],
        denied_tables=grant_doc.get("denied_tables") or [],
        access_description=grant_doc.get("access_description"),
        no_access_description=grant_doc.get("no_access_description"),
        query_db_config=QueryDatabaseConfig(**(grant_doc.get("query_db_config") or {})),
        persona=persona,
        is_active=grant_doc.get("is_active", True),
    )


class AccessRepository(ABC):
    @abstractmethod
    async def get_grant(self, employee: Employee) -> Optional[AccessGrant]:
        """Active grant for the employee, or None."""


class CosmosAccessRepository(AccessRepository):
    """Grants keyed by employee record id, personas by persona id."""

    def __init__(self, cosmos_client: CosmosDBClient, settings: CosmosDBSettings):
        self.client = cosmos_client
        self.access_container = settings.access_container
        self.personas_container = settings.personas_container

    async def get_grant(self, employee: Employee) -> Optional[AccessGrant]:
        docs = await self.client.query_items(
            self.access_container,
            "SELECT TOP 1 * FROM c WHERE c.employee_id = @employee_id AND c.is_active = true",
            [{"name": "@employee_id", "value": employee.id}],
        )
        if not docs:
            logger.info("No active access grant", employee_id=employee.id)
            return None

        grant_doc = strip_system_fields(docs[0])
        persona_doc = None
        if grant_doc.get("persona_id"):
            persona_doc = await self.client.read_item(
                self.personas_container, grant_doc["persona_id"], grant_doc["persona_id"]
            )
        return compose_grant(employee, grant_doc, persona_doc)


class InMemoryAccessRepository(AccessRepository):
    """Grant documents held in process, keyed by employee record id."""

    def __init__(self, grants: Iterable[Dict[str, Any]] = (), personas: Iterable[Dict[str, Any]] = ()):
        self.grants = {g["employee_id"]: dict(g) for g in grants}
        self.personas = {p["id"]: dict(p) for p in personas}

    async def get_grant(self, employee: Employee) -> Optional[AccessGrant]:
        grant_doc = self.grants.get(employee.id)
        if not grant_doc or not grant_doc.get("is_active", True):
            return None
        persona_doc = self.personas.get(grant_doc.get("persona_id") or "")
        return compose_grant(employee, grant_doc, persona_doc)
