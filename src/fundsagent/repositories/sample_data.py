"""
Sample organisation used in dev mode.

A small two-vertical org: a group CEO, a B2B zonal head with three RMs (one
of whom manages a further RM) and a B2C team lead with two advisors. The
demo user is the B2B zonal head.
"""

from datetime import date, datetime, timedelta
from typing import Dict, Any, List

from fundsagent.models.access import Employee
from fundsagent.models.sales import B2BSalesRow, B2CSalesRow, SalesTarget
from fundsagent.models.session import MemoryItem
from fundsagent.repositories.access_repository import InMemoryAccessRepository
from fundsagent.repositories.conversation_repository import InMemoryConversationRepository
from fundsagent.repositories.sales_repository import InMemorySalesDataRepository

DEMO_EMPLOYEE_NUMBER = "1100"


def _employee(number, name, title, unit, manager=None, status="Active") -> Employee:
    return Employee(
        id=f"emp-{number}",
        employee_number=number,
        full_name=name,
        work_email=f"{name.lower().replace(' ', '.')}@fundsagent.example",
        job_title=title,
        business_unit=unit,
        department="Sales" if unit in ("B2B", "B2C") else "Leadership",
        reporting_manager_emp_number=manager,
        employment_status=status,
    )


def sample_employees() -> List[Employee]:
    return [
        _employee("1000", "Asha Raman", "Group CEO", "Corporate"),
        _employee("1100", "Vikram Desai", "Zonal Head - West", "B2B", manager="1000"),
        _employee("1101", "Neha Kulkarni", "Relationship Manager", "B2B", manager="1100"),
        _employee("1102", "Rohan Mehta", "Relationship Manager", "B2B", manager="1100"),
        _employee("1103", "Kiran Shah", "Senior Relationship Manager", "B2B", manager="1100"),
        _employee("1104", "Arjun Pillai", "Relationship Manager", "B2B", manager="1103"),
        _employee("1105", "Meera Iyer", "Relationship Manager", "B2B", manager="1100", status="Inactive"),
        _employee("1200", "Sana Qureshi", "Team Lead - Advisory", "B2C", manager="1000"),
        _employee("1201", "Dev Malhotra", "Wealth Advisor", "B2C", manager="1200"),
        _employee("1202", "Tara Bose", "Wealth Advisor", "B2C", manager="1200"),
        _employee("1300", "Imran Khan", "Zonal Head - North", "B2B", manager="1000"),
        _employee("1301", "Lata Nair", "Relationship Manager", "B2B", manager="1300"),
    ]


def _b2b(rm, partner, zone, branch, mf, cob, aif, alt) -> B2BSalesRow:
    return B2BSalesRow(
        rm_emp_id=rm,
        partner_name=partner,
        zone=zone,
        branch=branch,
        mf_sif_msci=mf,
        cob100=cob,
        aif_pms_las=aif,
        alternate=alt,
        total=round(mf + cob + aif + alt, 2),
    )


def sample_b2b_mtd() -> List[B2BSalesRow]:
    return [
        _b2b("W1100", "Horizon Wealth", "West", "Mumbai", 1.2, 0.4, 0.3, 0.1),
        _b2b("W1101", "Sunrise Advisors", "West", "Mumbai", 2.5, 0.8, 0.2, 0.0),
        _b2b("W1101", "Lotus Capital", "West", "Pune", 1.1, 0.3, 0.1, 0.2),
        _b2b("W1102", "Keystone Partners", "West", "Ahmedabad", 0.9, 0.2, 0.0, 0.0),
        _b2b("W1103", "Evergreen IFA", "West", "Mumbai", 3.0, 1.0, 0.6, 0.4),
        _b2b("W1104", "Bluewater Finserv", "West", "Surat", 0.6, 0.1, 0.1, 0.0),
        _b2b("W1301", "Northstar Wealth", "North", "Delhi", 2.2, 0.7, 0.5, 0.1),
        _b2b("#N/A", "Unmapped ARN", "North", "Delhi", 0.5, 0.0, 0.0, 0.0),
    ]


def sample_b2b_ytd() -> List[B2BSalesRow]:
    return [
        _b2b("W1100", "Horizon Wealth", "West", "Mumbai", 10.5, 3.2, 2.1, 0.8),
        _b2b("W1101", "Sunrise Advisors", "West", "Mumbai", 18.0, 5.5, 1.9, 0.6),
        _b2b("W1102", "Keystone Partners", "West", "Ahmedabad", 7.4, 1.6, 0.4, 0.0),
        _b2b("W1103", "Evergreen IFA", "West", "Mumbai", 22.1, 7.3, 4.0, 2.2),
        _b2b("W1104", "Bluewater Finserv", "West", "Surat", 4.8, 0.9, 0.5, 0.1),
        _b2b("W1301", "Northstar Wealth", "North", "Delhi", 16.4, 4.8, 3.3, 0.9),
    ]


def sample_b2c(employees: List[Employee]) -> List[B2CSalesRow]:
    email = {e.employee_number: e.work_email for e in employees}
    return [
        B2CSalesRow(
            advisor_email=email["1201"], team="Advisory West", net_inflow_mtd=1.8, net_inflow_ytd=14.2,
            current_aum=120.5, aum_growth_pct=2.4, assigned_leads=35, new_sip_inflow_ytd=0.9,
        ),
        B2CSalesRow(
            advisor_email=email["1202"], team="Advisory West", net_inflow_mtd=0.7, net_inflow_ytd=9.6,
            current_aum=88.0, aum_growth_pct=1.1, assigned_leads=28, new_sip_inflow_ytd=0.5,
        ),
    ]


def sample_targets() -> List[SalesTarget]:
    month_start = date.today().replace(day=1)
    return [
        SalesTarget(employee_id="emp-1100", business_unit="B2B", target_value=4.0, period_start=month_start),
        SalesTarget(employee_id="emp-1101", business_unit="B2B", target_value=5.0, period_start=month_start),
        SalesTarget(employee_id="emp-1102", business_unit="B2B", target_value=3.0, period_start=month_start),
        SalesTarget(employee_id="emp-1201", business_unit="B2C", target_value=2.0, period_start=month_start),
    ]


def sample_personas() -> List[Dict[str, Any]]:
    return [
        {
            "id": "persona-leadership",
            "name": "Leadership",
            "agent_name": "FundsAgent",
            "tone": "executive",
            "output_format": "bullet_points",
            "capabilities": {
                "proactive_insights": True,
                "recommendations": True,
                "forecasting": True,
                "contest_strategy": False,
                "discuss_org_structure": True,
                "query_database": True,
            },
        },
        {
            "id": "persona-manager",
            "name": "Sales Manager",
            "tone": "coaching",
            "output_format": "conversational",
            "capabilities": {
                "proactive_insights": True,
                "recommendations": True,
                "forecasting": False,
                "contest_strategy": True,
                "discuss_org_structure": True,
                "query_database": False,
            },
        },
        {
            "id": "persona-rm",
            "name": "Relationship Manager",
            "tone": "motivational",
            "output_format": "conversational",
            "capabilities": {"proactive_insights": True, "recommendations": True},
        },
    ]


def sample_grants() -> List[Dict[str, Any]]:
    return [
        {"employee_id": "emp-1000", "persona_id": "persona-leadership", "row_scope": {"default": "all"}},
        {
            "employee_id": "emp-1100",
            "persona_id": "persona-manager",
            "row_scope": "own_and_subtree",
            "can_query_database": True,
            "access_description": "West zone B2B sales",
        },
        {"employee_id": "emp-1101", "persona_id": "persona-rm", "row_scope": "own_only"},
        {"employee_id": "emp-1102", "persona_id": "persona-rm", "row_scope": "own_only"},
        {"employee_id": "emp-1103", "persona_id": "persona-manager", "row_scope": "own_and_team"},
        {"employee_id": "emp-1104", "persona_id": "persona-rm", "row_scope": "own_only"},
        {"employee_id": "emp-1200", "persona_id": "persona-manager", "row_scope": "vertical_only"},
        {"employee_id": "emp-1201", "persona_id": "persona-rm", "row_scope": "own_only"},
        {"employee_id": "emp-1202", "persona_id": "persona-rm", "row_scope": "own_only", "is_active": False},
    ]


def sample_memory() -> List[MemoryItem]:
    now = datetime.utcnow()
    return [
        MemoryItem(employee_id="emp-1100", key="preferred_format", value="short bullet summaries",
                   memory_type="preference"),
        MemoryItem(employee_id="emp-1100", key="focus_area", value="grow COB in Pune branch",
                   memory_type="goal", expires_at=now + timedelta(days=30)),
    ]


def build_sample_repositories():
    """In-memory sales, access and conversation repositories seeded with the sample org."""
    employees = sample_employees()
    sales = InMemorySalesDataRepository(
        employees=employees,
        b2b_mtd=sample_b2b_mtd(),
        b2b_ytd=sample_b2b_ytd(),
        b2c=sample_b2c(employees),
        targets=sample_targets(),
    )
    access = InMemoryAccessRepository(grants=sample_grants(), personas=sample_personas())
    conversations = InMemoryConversationRepository(memory=sample_memory())
    return sales, access, conversations
