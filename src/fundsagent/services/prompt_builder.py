"""
System prompt assembly.

`build_system_prompt` is a pure function of a SystemPromptConfig: no clock,
no I/O. Layers, in order: identity, current user, data access guardrails,
database query tool (when enabled), behaviour and style, memory, tool usage.
A persona override replaces every layer except the user context and memory.
"""

import json
from datetime import date
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from fundsagent.models.access import (
    AccessGrant,
    CapabilitySet,
    Employee,
    QueryDatabaseConfig,
    RowScope,
)
from fundsagent.models.session import MemoryItem

MEMORY_LIMIT = 10

TONE_DESCRIPTIONS = {
    "professional": "Use a professional, polished tone. Be precise and authoritative.",
    "motivational": "Use an energetic, encouraging tone. Celebrate wins and inspire action.",
    "analytical": "Use a data-driven, analytical tone. Support every statement with numbers.",
    "strategic": "Use a high-level strategic tone. Focus on patterns, trends and decisions.",
    "concise": "Be extremely concise. Short sentences, no filler. Get to the point fast.",
    "friendly": "Use a warm, approachable, conversational tone. Feel like a helpful colleague.",
    "coaching": "Use a supportive coaching tone. Point out what is working and the next best action.",
    "executive": "Use a crisp executive tone. Lead with the conclusion and the numbers behind it.",
}

FORMAT_DESCRIPTIONS = {
    "conversational": "Respond conversationally with natural prose. No rigid structure unless the data demands it.",
    "bullet_points": "Structure your answers as bullet points wherever possible. Easy to scan.",
    "structured_report": "Use clear headings, sub-sections and tables when presenting data.",
    "executive_summary": "Lead with the punchline. Then provide brief supporting details. Keep it executive-level tight.",
}

ROW_SCOPE_DESCRIPTIONS = {
    RowScope.OWN_ONLY: "You can only access and discuss data for this individual employee.",
    RowScope.OWN_AND_SUBTREE: "You can access data for this employee and their entire downstream team.",
    RowScope.DIVISION_ONLY: (
        "You can access data for this employee and the members of their downstream team "
        "who belong to the same business unit."
    ),
    RowScope.ALL: (
        "You have access to all employee data across the organisation. This user is a group-level leader. "
        "Use get_company_summary for cross-vertical questions and overall business analysis, "
        "get_team_performance for team breakdowns and get_rankings for leaderboards. "
        'Never say "no data available"; escalate to the company summary instead.'
    ),
}

ENGINE_OVERLAYS = {
    "engine2": (
        "You are Thinking Engine 2, an independent AI analyst. You have access to the same tools as the other "
        "engines; use them to fetch data yourself rather than trusting earlier answers. Produce your own "
        "independent analysis, insights and perspective. Do not reveal which backend or model you are. "
        "Follow the formatting rules described above."
    ),
    "engine3": (
        "You are Thinking Engine 3, an independent strategic AI analyst. You cannot call tools; the data "
        "retrieved for this question is provided below. Produce an independent analysis focused on strategic "
        "implications, risk factors and actionable recommendations, exploring angles others may have missed. "
        "Do not reveal which backend or model you are. Follow the formatting rules described above."
    ),
}

EVIDENCE_USE = {
    "engine2": "Use them as your starting point and call your own tools to verify or extend them.",
    "engine3": "Base your analysis on them and do not invent figures that are not present.",
}

QUERY_SCHEMA = """### Database Schema Reference
Query one table per statement: `SELECT ... FROM <table> c WHERE ...` and refer to columns as `c.<column>`.

#### b2b_sales_current_month (B2B sales, current month) and btb_sales_YTD_minus_current_month (B2B sales, YTD excluding current month)
| Column | Type | Notes |
|---|---|---|
| rm_emp_id | text | W-prefixed RM employee number (e.g. W1234) |
| partner_name | text | ARN / IFA partner, not the RM |
| mf_sif_msci | number | MF + SIF + MSCI, Cr |
| cob100 | number | COB at 100%, Cr |
| aif_pms_las | number | AIF + PMS + LAS + DYNAMO trail, Cr |
| alternate | number | Alternate, Cr |
| total | number | Total net sales (COB 100%), Cr |
| branch | text | Branch name |
| zone | text | Zone name |

#### b2c (B2C advisor performance)
| Column | Type | Notes |
|---|---|---|
| advisor_email | text | Advisor work email |
| team | text | Team name |
| net_inflow_mtd | number | Net inflow MTD, Cr |
| net_inflow_ytd | number | Net inflow YTD, Cr |
| current_aum | number | Current AUM, Cr |
| aum_growth_pct | number | AUM growth, % |
| assigned_leads | integer | Assigned leads |
| new_sip_inflow_ytd | number | New SIP inflow YTD, Cr |

#### employees (employee directory)
| Column | Type | Notes |
|---|---|---|
| employee_number | text | Employee number |
| full_name | text | Display name |
| work_email | text | Email address |
| business_unit | text | B2B, B2C, PW, ... |
| department | text | Department |
| job_title | text | Role title |
| reporting_manager_emp_number | text | Manager's employee_number |
| employment_status | text | Active or Inactive |

#### targets (performance targets)
| Column | Type | Notes |
|---|---|---|
| employee_id | text | Employee record id |
| business_unit | text | B2B, B2C, PW |
| target_type | text | monthly or quarterly |
| target_value | number | Target, Cr |
| period_start | date | Period start |
| period_end | date | Period end |"""


class SystemPromptConfig(BaseModel):
    """Everything the system prompt depends on."""

    agent_name: str = "FundsAgent"
    today: date
    employee: Employee
    row_scope: RowScope = RowScope.OWN_ONLY
    capabilities: CapabilitySet = Field(default_factory=CapabilitySet)
    tone: str = "professional"
    output_format: str = "conversational"
    system_prompt_override: Optional[str] = None
    access_description: Optional[str] = None
    no_access_description: Optional[str] = None
    allowed_tables: List[str] = Field(default_factory=list)
    denied_tables: List[str] = Field(default_factory=list)
    query_db_config: QueryDatabaseConfig = Field(default_factory=QueryDatabaseConfig)
    memory: List[MemoryItem] = Field(default_factory=list)

    @classmethod
    def from_grant(
        cls,
        employee: Employee,
        grant: AccessGrant,
        today: date,
        memory: Optional[List[MemoryItem]] = None,
        default_agent_name: str = "FundsAgent",
    ) -> "SystemPromptConfig":
        persona = grant.persona
        return cls(
            agent_name=(persona.agent_name if persona and persona.agent_name else default_agent_name),
            today=today,
            employee=employee,
            row_scope=grant.row_scope,
            capabilities=grant.capabilities,
            tone=persona.tone if persona else "professional",
            output_format=persona.output_format if persona else "conversational",
            system_prompt_override=persona.system_prompt_override if persona else None,
            access_description=grant.access_description,
            no_access_description=grant.no_access_description,
            allowed_tables=grant.allowed_tables,
            denied_tables=grant.denied_tables,
            query_db_config=grant.query_db_config,
            memory=memory or [],
        )


def build_system_prompt(config: SystemPromptConfig) -> str:
    if config.system_prompt_override and config.system_prompt_override.strip():
        layers = [config.system_prompt_override.strip(), _user_context(config), _memory(config)]
    else:
        layers = [
            _identity(config),
            _user_context(config),
            _access_guardrails(config),
            _query_database(config),
            _behaviour(config),
            _memory(config),
            _tool_usage(),
        ]
    return "\n\n".join(layer for layer in layers if layer)


def _identity(config: SystemPromptConfig) -> str:
    return (
        "## Identity\n"
        f"You are {config.agent_name}, the AI performance assistant built into the Sales Dashboard.\n"
        "Your purpose is to help sales professionals understand their performance, make smarter decisions "
        "and hit their targets.\n"
        "You have direct access to live sales data, team hierarchies, rankings and performance metrics "
        "via structured tools.\n"
        f"Today's date is {config.today.day} {config.today.strftime('%B %Y')}."
    )


def _user_context(config: SystemPromptConfig) -> str:
    employee = config.employee
    lines = [
        "## Current User",
        f"- **Name:** {employee.full_name}",
        f"- **Employee Number:** {employee.employee_number}",
        f"- **Role:** {employee.job_title}",
        f"- **Business Unit:** {employee.business_unit}",
    ]
    if employee.department:
        lines.append(f"- **Department:** {employee.department}")
    lines.append("")
    lines.append(
        "Address the user by their first name when appropriate. Personalise responses to their role and vertical."
    )
    return "\n".join(lines)


def _access_guardrails(config: SystemPromptConfig) -> str:
    capabilities = config.capabilities
    can = ["Answer questions about performance data you can access"]
    cannot = []

    if capabilities.recommendations:
        can.append("Make data-driven recommendations")
    else:
        cannot.append("Make personalised recommendations (not enabled for this user)")
    if capabilities.forecasting:
        can.append("Perform trend analysis and forecasting")
    else:
        cannot.append("Provide sales forecasts (not enabled for this user)")
    if capabilities.proactive_insights:
        can.append("Proactively surface alerts and opportunities")
    if capabilities.contest_strategy:
        can.append("Suggest contest and incentive strategies")
    else:
        cannot.append("Discuss contest strategy (not enabled for this user)")
    if capabilities.discuss_org_structure:
        can.append("Discuss org structure and reporting chains")
    else:
        cannot.append("Discuss org structure details (not enabled for this user)")
    if capabilities.query_database:
        can.append("Use query_database to run custom read-only queries for ad-hoc data questions")
    else:
        cannot.append("Use the query_database tool (not enabled for this user; use the specific tools instead)")

    tables = ", ".join(config.allowed_tables) if config.allowed_tables else "All tables (as scoped by row scope)"
    lines = [
        "## Data Access Guardrails",
        f"**Row scope:** {ROW_SCOPE_DESCRIPTIONS.get(config.row_scope, ROW_SCOPE_DESCRIPTIONS[RowScope.OWN_ONLY])}",
        f"**Data you can access:** {tables}",
    ]
    if config.denied_tables:
        lines.append(f"**Restricted tables (do NOT query):** {', '.join(config.denied_tables)}")
    lines.append("")
    lines.append("**You CAN:**")
    lines.extend(f"- {item}" for item in can)
    if cannot:
        lines.append("")
        lines.append("**You CANNOT:**")
        lines.extend(f"- {item}" for item in cannot)
    if config.access_description:
        lines.append(f"\nData access note: {config.access_description}")
    if config.no_access_description:
        lines.append(f'When asked about restricted data, say: "{config.no_access_description}"')
    lines.append("")
    lines.append(
        "Never expose raw employee IDs, UUIDs or internal system fields in your responses. Translate all data "
        "into human-readable form. Always cite the period (MTD/YTD) when quoting figures."
    )
    return "\n".join(lines)


def _query_database(config: SystemPromptConfig) -> str:
    if not config.capabilities.query_database:
        return ""
    qdb = config.query_db_config
    tables = [t for t in config.allowed_tables if not t.startswith("agent_") and t != "users"]
    lines = [
        "## Database Query Tool (query_database)",
        "You have access to the query_database tool to write custom read-only queries. Use it when the specific "
        "tools don't cover the user's question.",
        "",
        "### Guardrails for this user",
        f"- **Max rows per query:** {qdb.result_limit}",
        "- **Aggregate functions (SUM, COUNT, AVG, GROUP BY):** "
        + ("ALLOWED" if qdb.allow_aggregates else "NOT ALLOWED; do not use GROUP BY or aggregate functions"),
        "- **JOIN queries:** " + ("ALLOWED" if qdb.allow_joins else "NOT ALLOWED; query one table at a time"),
        f"- **Tables you may query:** {', '.join(tables) if tables else 'all data tables as per your row scope'}",
    ]
    blocked = [(table, cols) for table, cols in qdb.blocked_columns.items() if cols]
    if blocked:
        lines.append("- **Blocked columns (never return these):**")
        lines.extend(f"  - {table}: {', '.join(cols)}" for table, cols in blocked)
    lines.append("")
    lines.append(QUERY_SCHEMA)
    lines.append("")
    lines.append("### Query Writing Rules")
    lines.append("1. B2B employee ids are W-prefixed: `WHERE c.rm_emp_id = 'W1234'`")
    lines.append("2. B2C advisors map via email: `WHERE c.advisor_email = 'name@example.com'`")
    lines.append(f"3. Always include `OFFSET 0 LIMIT {qdb.result_limit}` unless the user explicitly asks for all rows")
    lines.append(
        "4. Prefer the specific tools (get_my_performance, get_team_performance, ...) for common questions; "
        "use query_database only for ad-hoc needs"
    )
    return "\n".join(lines)


def _behaviour(config: SystemPromptConfig) -> str:
    tone = TONE_DESCRIPTIONS.get(config.tone, TONE_DESCRIPTIONS["professional"])
    output_format = FORMAT_DESCRIPTIONS.get(config.output_format, FORMAT_DESCRIPTIONS["conversational"])
    return (
        "## Behaviour & Style\n"
        f"**Tone:** {tone}\n"
        f"**Format:** {output_format}\n\n"
        "Additional behavioural guidelines:\n"
        '- Use Indian number formatting (e.g. ₹1,23,456 or "1.23 Cr") when displaying financial figures.\n'
        '- When presenting rankings, always note the total pool size (e.g. "#3 out of 47").\n'
        "- If data is unavailable for a query, say so clearly and suggest an alternative.\n"
        "- Never fabricate numbers. If a tool returns null or empty, say the data is not available.\n"
        "- When comparing periods, highlight the delta and direction (↑ / ↓).\n"
        "- Keep responses focused and relevant to the user's role."
    )


def _memory(config: SystemPromptConfig) -> str:
    if not config.memory:
        return ""
    lines = [f"- [{m.memory_type}] {m.key}: {m.value}" for m in config.memory[:MEMORY_LIMIT]]
    return (
        "## Memory (from previous sessions)\n"
        "The following context was retained from prior conversations with this user:\n"
        + "\n".join(lines)
        + "\n\nUse this context to personalise your responses where relevant. "
        "Don't repeat it back verbatim unless asked."
    )


def _tool_usage() -> str:
    return (
        "## Tool Usage\n"
        "Always use the available tools to fetch live data before answering quantitative questions. "
        "Do not guess or approximate numbers from memory. For multi-part questions, call multiple tools "
        "in sequence as needed."
    )


def build_engine_prompt(
    system_prompt: str, engine_id: str, evidence: Optional[List[Dict[str, Any]]] = None
) -> str:
    """Primary instructions plus an engine overlay and, when given, the primary's evidence."""
    parts = [system_prompt.strip(), ENGINE_OVERLAYS.get(engine_id, ENGINE_OVERLAYS["engine2"])]
    if evidence:
        parts.append(
            "## Data retrieved for this question\n"
            "The following tool results were fetched under this user's access scope. "
            + EVIDENCE_USE.get(engine_id, EVIDENCE_USE["engine3"]) + "\n"
            "```json\n" + json.dumps(evidence, indent=2, default=str) + "\n```"
        )
    return "\n\n".join(p for p in parts if p)
