"""
Data-fetching tool handlers.

Every handler validates its own argument model before it runs and filters
the rows it returns by the caller's visible identities, whatever the store
already did. Figures are in crore and rounded to two decimals.
"""

from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from typing import Any, Dict, Iterable, List, Literal, Optional, Type
from pydantic import BaseModel, Field, validator
import structlog

from fundsagent.exceptions import ToolExecutionError
from fundsagent.models.access import Employee, ToolContext, rm_key
from fundsagent.models.sales import B2BSalesRow, B2CSalesRow, SalesPeriod
from fundsagent.repositories.sales_repository import B2B_MTD_TABLE, B2C_TABLE, SalesDataRepository
from fundsagent.services.access_service import AccessService
from fundsagent.services.query_guard import QueryGuard

logger = structlog.get_logger(__name__)

Period = Literal["MTD", "YTD", "both"]


def _cr(value: float) -> float:
    return round(value or 0.0, 2)


def normalise_period(v):
    if isinstance(v, str):
        v = v.strip()
        return "both" if v.lower() == "both" else v.upper()
    return v


# Argument models


class PerformanceArgs(BaseModel):
    period: Period = Field(default="both", description="Which period to return data for. Default: both")

    @validator("period", pre=True)
    def period_case(cls, v):
        return normalise_period(v)


class TeamPerformanceArgs(BaseModel):
    period: Period = Field(default="MTD", description="Which period to return. Default: MTD")
    limit: int = Field(default=20, ge=1, le=100, description="Max rows to return. Default: 20")
    sort_by: Literal["mtd_desc", "mtd_asc", "ytd_desc", "ytd_asc", "name"] = Field(
        default="mtd_desc", description="Sort order. Default: mtd_desc"
    )

    @validator("period", pre=True)
    def period_case(cls, v):
        return normalise_period(v)


class RankingsArgs(BaseModel):
    vertical: Literal["B2B", "B2C"] = Field(default="B2B", description="Which vertical to rank. Default: B2B")
    sort_by: Literal["MTD", "YTD"] = Field(default="MTD", description="Ranking basis. Default: MTD")
    filter_zone: Optional[str] = Field(default=None, description="Optional: filter to a specific zone name")
    limit: int = Field(default=10, ge=1, description="Max rows. Default: 10, at most 50")

    @validator("vertical", "sort_by", pre=True)
    def upper_case(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    @validator("limit")
    def cap_limit(cls, v):
        return min(v, 50)


class EmployeeInfoArgs(BaseModel):
    query: str = Field(..., min_length=1, description="Name fragment or employee number to search for")
    limit: int = Field(default=5, ge=1, le=20, description="Max matches. Default: 5")

    @validator("query", pre=True)
    def strip_query(cls, v):
        return v.strip() if isinstance(v, str) else v


class OrgStructureArgs(BaseModel):
    employee_number: Optional[str] = Field(
        default=None, description="Employee number to fetch org structure for. If omitted, uses the current user."
    )
    depth: int = Field(default=2, ge=0, description="How many levels down to fetch. Default: 2, at most 4")

    @validator("depth")
    def cap_depth(cls, v):
        return min(v, 4)


class ProactiveInsightsArgs(BaseModel):
    check_types: List[Literal["target_gap", "team_outlier", "ranking_summary", "all"]] = Field(
        default_factory=lambda: ["all"], description="Which checks to run. Default: all"
    )


class CompanySummaryArgs(BaseModel):
    period: Period = Field(default="both", description="Which period to return. Default: both")
    include_top_performers: bool = Field(
        default=True, description="Whether to include top 3 performers per vertical. Default: true"
    )

    @validator("period", pre=True)
    def period_case(cls, v):
        return normalise_period(v)


class QueryDatabaseArgs(BaseModel):
    sql: str = Field(..., min_length=1, description="The SQL SELECT query to execute, in Cosmos DB SQL.")
    explanation: str = Field(
        ..., min_length=1, description="One-sentence description of what this query fetches, used for logging."
    )

    @validator("explanation")
    def truncate_explanation(cls, v):
        return v.strip()[:300]


# Shared aggregation


def aggregate_b2b(rows: Iterable[B2BSalesRow]) -> Dict[str, Dict[str, Any]]:
    """Sum partner-level rows per RM, skipping unmapped rows."""
    totals: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        if not row.has_rm:
            continue
        entry = totals.get(row.rm_emp_id)
        if entry is None:
            totals[row.rm_emp_id] = {
                "rm_emp_id": row.rm_emp_id,
                "zone": row.zone,
                "branch": row.branch,
                "mf_sif_msci": row.mf_sif_msci,
                "cob100": row.cob100,
                "aif_pms_las": row.aif_pms_las,
                "alternate": row.alternate,
                "total": row.total,
            }
            continue
        entry["mf_sif_msci"] += row.mf_sif_msci
        entry["cob100"] += row.cob100
        entry["aif_pms_las"] += row.aif_pms_las
        entry["alternate"] += row.alternate
        entry["total"] += row.total
        entry["zone"] = entry["zone"] or row.zone
        entry["branch"] = entry["branch"] or row.branch
    return totals


def breakdown(entry: Optional[Dict[str, Any]]) -> Optional[Dict[str, float]]:
    if entry is None:
        return None
    return {
        "mf_sif_msci_cr": _cr(entry["mf_sif_msci"]),
        "cob100_cr": _cr(entry["cob100"]),
        "aif_pms_las_cr": _cr(entry["aif_pms_las"]),
        "alternate_cr": _cr(entry["alternate"]),
        "total_cr": _cr(entry["total"]),
    }


def visible_b2b(rows: Iterable[B2BSalesRow], ctx: ToolContext) -> List[B2BSalesRow]:
    return [r for r in rows if r.has_rm and ctx.visible.includes_number(r.rm_emp_id)]


def visible_b2c(rows: Iterable[B2CSalesRow], ctx: ToolContext) -> List[B2CSalesRow]:
    return [r for r in rows if ctx.visible.includes_email(r.advisor_email)]


def severity_for(pct: float) -> str:
    if pct < 50:
        return "high"
    if pct < 80:
        return "medium"
    return "low"


class ToolHandler(ABC):
    """One catalogue entry: description, argument model and implementation."""

    description: str = ""
    Arguments: Type[BaseModel] = BaseModel

    def __init__(self, sales: SalesDataRepository, access: AccessService, query_guard: QueryGuard):
        self.sales = sales
        self.access = access
        self.query_guard = query_guard

    @abstractmethod
    async def run(self, args: BaseModel, ctx: ToolContext) -> Dict[str, Any]:
        """Execute with validated arguments; raise ToolExecutionError for expected failures."""

    async def rm_directory(self, keys: Iterable[str]) -> Dict[str, Employee]:
        """Employees behind W-prefixed RM keys. Partner names in sales rows are not RM names."""
        keys = list(keys)
        candidates = set(keys) | {k[1:] for k in keys if k[:1].upper() == "W"}
        if not candidates:
            return {}
        employees = await self.sales.get_employees(candidates)
        return {rm_key(e.employee_number): e for e in employees}

    async def company_summary(self, ctx: ToolContext, period: str = "both", include_top: bool = True):
        mtd_rows = visible_b2b(await self.sales.b2b_rows(SalesPeriod.MTD), ctx)
        ytd_rows = visible_b2b(await self.sales.b2b_rows(SalesPeriod.YTD), ctx)
        b2c_rows = visible_b2c(await self.sales.b2c_rows(), ctx)

        mtd = list(aggregate_b2b(mtd_rows).values())
        ytd = aggregate_b2b(ytd_rows)
        b2b_mtd_total = sum(e["total"] for e in mtd)
        b2b_ytd_total = sum(e["total"] for e in ytd.values())

        zones: Dict[str, float] = {}
        for entry in mtd:
            zone = entry["zone"] or "Unknown"
            zones[zone] = zones.get(zone, 0.0) + entry["total"]

        b2c_mtd = sum(r.net_inflow_mtd for r in b2c_rows)
        b2c_ytd = sum(r.net_inflow_ytd for r in b2c_rows)

        result: Dict[str, Any] = {
            "as_of": datetime.utcnow().isoformat(),
            "period": period,
            "company_totals": {
                "combined_mtd_cr": _cr(b2b_mtd_total + b2c_mtd),
                "combined_ytd_cr": _cr(b2b_ytd_total + b2c_ytd),
            },
            "b2b": {
                "total_employees": len(mtd),
                "mtd_total_cr": _cr(b2b_mtd_total),
                "ytd_total_cr": _cr(b2b_ytd_total),
                "mtd_breakdown": {
                    "mf_sif_msci_cr": _cr(sum(e["mf_sif_msci"] for e in mtd)),
                    "cob100_cr": _cr(sum(e["cob100"] for e in mtd)),
                    "aif_pms_las_cr": _cr(sum(e["aif_pms_las"] for e in mtd)),
                    "alternate_cr": _cr(sum(e["alternate"] for e in mtd)),
                },
                "zone_breakdown": [
                    {"zone": zone, "mtd_total_cr": _cr(total)}
                    for zone, total in sorted(zones.items(), key=lambda z: z[1], reverse=True)
                ],
            },
            "b2c": {
                "total_advisors": len(b2c_rows),
                "mtd_net_inflow_cr": _cr(b2c_mtd),
                "ytd_net_inflow_cr": _cr(b2c_ytd),
                "total_aum_cr": _cr(sum(r.current_aum for r in b2c_rows)),
            },
        }

        if include_top:
            top = sorted(mtd, key=lambda e: e["total"], reverse=True)[:3]
            names = await self.rm_directory(e["rm_emp_id"] for e in top)
            result["b2b"]["top_performers_mtd"] = [
                {
                    "rank": i + 1,
                    "employee_number": e["rm_emp_id"],
                    "rm_name": names[e["rm_emp_id"]].full_name if e["rm_emp_id"] in names else e["rm_emp_id"],
                    "zone": e["zone"],
                    "mtd_total_cr": _cr(e["total"]),
                }
                for i, e in enumerate(top)
            ]
            result["b2c"]["top_advisors_mtd"] = [
                {"rank": i + 1, "advisor": r.advisor_email, "team": r.team, "net_inflow_mtd_cr": _cr(r.net_inflow_mtd)}
                for i, r in enumerate(sorted(b2c_rows, key=lambda r: r.net_inflow_mtd, reverse=True)[:3])
            ]
        return result


class MyPerformanceTool(ToolHandler):
    description = (
        "Get the current user's own sales performance. B2B: MTD and YTD breakdown "
        "(MF+SIF+MSCI, COB100, AIF+PMS+LAS+DYNAMO, Alternate). B2C: Net Inflow, AUM, SIP Inflow."
    )
    Arguments = PerformanceArgs

    async def run(self, args: PerformanceArgs, ctx: ToolContext) -> Dict[str, Any]:
        employee = ctx.employee
        division = employee.business_unit

        if division == "B2B":
            key = rm_key(employee.employee_number)
            mtd = aggregate_b2b(visible_b2b(await self.sales.b2b_rows(SalesPeriod.MTD, [key]), ctx)).get(key)
            ytd = aggregate_b2b(visible_b2b(await self.sales.b2b_rows(SalesPeriod.YTD, [key]), ctx)).get(key)
            result: Dict[str, Any] = {
                "vertical": "B2B",
                "employee_number": employee.employee_number,
                "full_name": employee.full_name,
                "zone": (mtd or ytd or {}).get("zone", ""),
                "branch": (mtd or ytd or {}).get("branch", ""),
            }
            if args.period != "YTD":
                result["mtd"] = breakdown(mtd)
            if args.period != "MTD":
                result["ytd_excluding_current_month"] = breakdown(ytd)
                result["ytd_total_cr"] = _cr(mtd["total"] + ytd["total"]) if mtd and ytd else None
            return result

        if division == "B2C":
            rows = visible_b2c(await self.sales.b2c_rows([employee.work_email]), ctx)
            if not rows:
                return {
                    "vertical": "B2C",
                    "employee_number": employee.employee_number,
                    "message": "No B2C advisory data found for this email address.",
                    "data": None,
                }
            row = rows[0]
            return {
                "vertical": "B2C",
                "employee_number": employee.employee_number,
                "data": {
                    "team": row.team,
                    "net_inflow_mtd_cr": _cr(row.net_inflow_mtd),
                    "net_inflow_ytd_cr": _cr(row.net_inflow_ytd),
                    "current_aum_cr": _cr(row.current_aum),
                    "aum_growth_pct": row.aum_growth_pct,
                    "assigned_leads": row.assigned_leads,
                    "new_sip_inflow_ytd_cr": _cr(row.new_sip_inflow_ytd),
                },
            }

        # Leadership divisions have no personal sales rows
        if ctx.visible.everyone:
            return await self.company_summary(ctx, period="both")
        return {"vertical": division, "message": "No direct sales data available for this business unit."}


class TeamPerformanceTool(ToolHandler):
    description = (
        "Get aggregated performance for the user's team (direct and indirect reportees). "
        "Returns one row per team member sorted by MTD sales. Useful for managers."
    )
    Arguments = TeamPerformanceArgs

    async def run(self, args: TeamPerformanceArgs, ctx: ToolContext) -> Dict[str, Any]:
        if not (ctx.grant.table_allowed(B2B_MTD_TABLE) or ctx.grant.table_allowed(B2C_TABLE)):
            raise ToolExecutionError("get_team_performance", "You do not have access to team performance data.")

        use_ytd = "ytd" in args.sort_by or args.period == "YTD"
        if ctx.visible.everyone:
            return await self.company_summary(ctx, period="YTD" if use_ytd else "MTD")

        if len(ctx.visible) <= 1:
            return {
                "message": "No team members found under your profile, or your access level restricts team data.",
                "team_size": 0,
                "members": [],
            }

        if ctx.employee.business_unit == "B2C":
            return await self._advisors(args, ctx, use_ytd)

        period = SalesPeriod.YTD if use_ytd else SalesPeriod.MTD
        rows = visible_b2b(await self.sales.b2b_rows(period, ctx.visible.rm_keys), ctx)
        entries = list(aggregate_b2b(rows).values())
        names = await self.rm_directory(e["rm_emp_id"] for e in entries)

        def name_of(entry):
            employee = names.get(entry["rm_emp_id"])
            return employee.full_name if employee else entry["rm_emp_id"]

        if args.sort_by == "name":
            entries.sort(key=lambda e: name_of(e).lower())
        else:
            entries.sort(key=lambda e: e["total"], reverse=args.sort_by.endswith("desc"))

        total_key = "ytd_total_cr" if use_ytd else "mtd_total_cr"
        members = []
        for i, entry in enumerate(entries[: args.limit]):
            employee = names.get(entry["rm_emp_id"])
            member = {
                "rank": i + 1,
                "employee_number": entry["rm_emp_id"],
                "rm_name": name_of(entry),
                "job_title": employee.job_title if employee else "",
                "zone": entry["zone"],
                "branch": entry["branch"],
                total_key: _cr(entry["total"]),
            }
            member.update({k: v for k, v in breakdown(entry).items() if k != "total_cr"})
            members.append(member)

        return {"period": period.value, "team_size": len(ctx.visible), "members": members}

    async def _advisors(self, args: TeamPerformanceArgs, ctx: ToolContext, use_ytd: bool) -> Dict[str, Any]:
        rows = visible_b2c(await self.sales.b2c_rows(ctx.visible.work_emails), ctx)
        if args.sort_by == "name":
            rows.sort(key=lambda r: r.advisor_email)
        else:
            rows.sort(
                key=lambda r: r.net_inflow_ytd if use_ytd else r.net_inflow_mtd,
                reverse=args.sort_by.endswith("desc"),
            )
        return {
            "period": "YTD" if use_ytd else "MTD",
            "team_size": len(ctx.visible),
            "members": [
                {
                    "rank": i + 1,
                    "advisor_email": r.advisor_email,
                    "team": r.team,
                    "net_inflow_mtd_cr": _cr(r.net_inflow_mtd),
                    "net_inflow_ytd_cr": _cr(r.net_inflow_ytd),
                    "current_aum_cr": _cr(r.current_aum),
                }
                for i, r in enumerate(rows[: args.limit])
            ],
        }


class RankingsTool(ToolHandler):
    description = (
        "Get leaderboard rankings, overall or filtered by zone. Ranks are computed over the whole pool; "
        "only entries within the user's access scope are listed."
    )
    Arguments = RankingsArgs

    async def run(self, args: RankingsArgs, ctx: ToolContext) -> Dict[str, Any]:
        if args.vertical == "B2C":
            pool = await self.sales.b2c_rows()
            metric = (lambda r: r.net_inflow_ytd) if args.sort_by == "YTD" else (lambda r: r.net_inflow_mtd)
            ranked = sorted(pool, key=metric, reverse=True)
            visible = [(i + 1, r) for i, r in enumerate(ranked) if ctx.visible.includes_email(r.advisor_email)]
            return {
                "vertical": "B2C",
                "sort_by": args.sort_by,
                "total_employees_in_pool": len(pool),
                "rankings": [
                    {
                        "rank": rank,
                        "advisor_email": r.advisor_email,
                        "team": r.team,
                        "net_inflow_mtd_cr": _cr(r.net_inflow_mtd),
                        "net_inflow_ytd_cr": _cr(r.net_inflow_ytd),
                        "current_aum_cr": _cr(r.current_aum),
                    }
                    for rank, r in visible[: args.limit]
                ],
            }

        period = SalesPeriod(args.sort_by)
        pool = aggregate_b2b(await self.sales.b2b_rows(period, zone=args.filter_zone))
        ranked = sorted(pool.values(), key=lambda e: e["total"], reverse=True)
        visible = [(i + 1, e) for i, e in enumerate(ranked) if ctx.visible.includes_number(e["rm_emp_id"])]
        visible = visible[: args.limit]
        names = await self.rm_directory(e["rm_emp_id"] for _, e in visible)

        return {
            "vertical": "B2B",
            "sort_by": args.sort_by,
            "filter_zone": args.filter_zone,
            "total_employees_in_pool": len(pool),
            "rankings": [
                {
                    "rank": rank,
                    "employee_number": e["rm_emp_id"],
                    "rm_name": names[e["rm_emp_id"]].full_name if e["rm_emp_id"] in names else e["rm_emp_id"],
                    "job_title": names[e["rm_emp_id"]].job_title if e["rm_emp_id"] in names else "",
                    "zone": e["zone"],
                    "branch": e["branch"],
                    "total_cr": _cr(e["total"]),
                }
                for rank, e in visible
            ],
        }


class EmployeeInfoTool(ToolHandler):
    description = (
        "Look up employee details by name or employee number. Returns full_name, employee_number, "
        "job_title, business_unit, department and reporting manager."
    )
    Arguments = EmployeeInfoArgs

    async def run(self, args: EmployeeInfoArgs, ctx: ToolContext) -> Dict[str, Any]:
        fetch = args.limit if ctx.visible.everyone else max(args.limit, 50)
        matches = [
            e for e in await self.sales.search_employees(args.query, limit=fetch)
            if ctx.visible.includes_number(e.employee_number)
        ][: args.limit]
        if not matches:
            return {"message": f'No employee found matching "{args.query}"'}
        return {
            "results": [
                {
                    "employee_number": e.employee_number,
                    "full_name": e.full_name,
                    "job_title": e.job_title,
                    "business_unit": e.business_unit,
                    "department": e.department,
                    "reporting_manager_emp_number": e.reporting_manager_emp_number,
                }
                for e in matches
            ]
        }


class OrgStructureTool(ToolHandler):
    description = "Get the reporting structure for an employee: their direct reports and who they report to."
    Arguments = OrgStructureArgs

    async def run(self, args: OrgStructureArgs, ctx: ToolContext) -> Dict[str, Any]:
        target = (args.employee_number or ctx.employee.employee_number).strip()
        graph = await self.access.identity_graph()
        employee = graph.get(target)
        if employee is None or not ctx.visible.includes_number(target):
            raise ToolExecutionError("get_org_structure", f"Employee {target} not found")

        def node_for(e: Employee) -> Dict[str, Any]:
            reports = [r for r in graph.direct_reports(e.employee_number) if ctx.visible.includes_number(r.employee_number)]
            return {
                "employee_number": e.employee_number,
                "full_name": e.full_name,
                "job_title": e.job_title,
                "business_unit": e.business_unit,
                "direct_reports_count": len(reports),
            }, reports

        root, root_reports = node_for(employee)
        visited = {employee.employee_number}
        queue = deque([(root, root_reports, args.depth)])
        while queue:
            node, reports, remaining = queue.popleft()
            if remaining <= 0 or not reports:
                continue
            node["direct_reports"] = []
            for report in reports:
                if report.employee_number in visited:
                    continue
                visited.add(report.employee_number)
                child, child_reports = node_for(report)
                node["direct_reports"].append(child)
                queue.append((child, child_reports, remaining - 1))

        manager = graph.get(employee.reporting_manager_emp_number or "")
        reports_to = None
        if manager is not None and ctx.visible.includes_number(manager.employee_number):
            reports_to = {
                "employee_number": manager.employee_number,
                "full_name": manager.full_name,
                "job_title": manager.job_title,
            }
        return {"employee": root, "reports_to": reports_to}


class ProactiveInsightsTool(ToolHandler):
    description = (
        "Run proactive insight checks and return alerts or opportunities: target gaps, "
        "team outliers and a ranking summary."
    )
    Arguments = ProactiveInsightsArgs

    async def run(self, args: ProactiveInsightsArgs, ctx: ToolContext) -> Dict[str, Any]:
        checks = set(args.check_types)
        run_all = "all" in checks
        employee = ctx.employee
        timestamp = datetime.utcnow().isoformat()

        if ctx.visible.everyone:
            summary = await self.company_summary(ctx, period="MTD")
            return {
                "insights": [
                    {
                        "type": "company_snapshot",
                        "severity": "info",
                        "title": "Company performance snapshot",
                        "detail": "Full cross-vertical summary attached below.",
                        "company_summary": summary,
                    }
                ],
                "timestamp": timestamp,
                "employee_number": employee.employee_number,
                "note": "Showing company-wide summary for leadership access level.",
            }

        insights: List[Dict[str, Any]] = []
        if run_all or "target_gap" in checks:
            insight = await self._target_gap(ctx)
            if insight:
                insights.append(insight)
        if run_all or "team_outlier" in checks:
            insight = await self._team_outlier(ctx)
            if insight:
                insights.append(insight)
        if (run_all or "ranking_summary" in checks) and employee.business_unit == "B2B":
            insight = await self._ranking_summary(ctx)
            if insight:
                insights.append(insight)

        if not insights:
            insights.append({
                "type": "info",
                "severity": "info",
                "title": "No specific alerts at this time",
                "detail": "Everything appears on track. Ask me about specific metrics, your team, or rankings.",
            })
        return {"insights": insights, "timestamp": timestamp, "employee_number": employee.employee_number}

    async def _target_gap(self, ctx: ToolContext) -> Optional[Dict[str, Any]]:
        employee = ctx.employee
        if employee.business_unit == "B2B":
            key = rm_key(employee.employee_number)
            rows = visible_b2b(await self.sales.b2b_rows(SalesPeriod.MTD, [key]), ctx)
            if not rows:
                return None
            actual = sum(r.total for r in rows)
            label = "monthly target"
        elif employee.business_unit == "B2C":
            rows = visible_b2c(await self.sales.b2c_rows([employee.work_email]), ctx)
            if not rows:
                return None
            actual = rows[0].net_inflow_mtd
            label = "Net Inflow target"
        else:
            return None

        target = await self.sales.latest_target(employee.id, employee.business_unit)
        if target is None or not target.target_value:
            return {
                "type": "target_gap",
                "severity": "info",
                "title": "MTD performance",
                "detail": f"Your MTD total is {actual:.2f} Cr. No target data found to compare against.",
                "mtd_cr": _cr(actual),
            }

        pct = actual / target.target_value * 100
        severity = severity_for(pct)
        titles = {"high": "Critical target gap", "medium": "Target gap alert", "low": "On track with target"}
        return {
            "type": "target_gap",
            "severity": severity,
            "title": titles[severity],
            "detail": (
                f"You are at {pct:.1f}% of your {label} "
                f"({actual:.2f} Cr of {target.target_value:.2f} Cr MTD)."
            ),
            "mtd_cr": _cr(actual),
            "target_cr": target.target_value,
            "achievement_pct": round(pct, 1),
        }

    async def _team_outlier(self, ctx: ToolContext) -> Optional[Dict[str, Any]]:
        if len(ctx.visible) <= 1:
            return None
        own = rm_key(ctx.employee.employee_number)
        rows = visible_b2b(await self.sales.b2b_rows(SalesPeriod.MTD, ctx.visible.rm_keys), ctx)
        members = [e for e in aggregate_b2b(rows).values() if e["rm_emp_id"] != own]
        if not members:
            return None
        average = sum(e["total"] for e in members) / len(members)
        ordered = sorted(members, key=lambda e: e["total"], reverse=True)
        top, bottom = ordered[0], ordered[-1]
        return {
            "type": "team_outlier",
            "severity": "info",
            "title": "Team performance snapshot",
            "detail": (
                f"Team avg MTD: {average:.2f} Cr. Top: {top['rm_emp_id']} ({top['total']:.2f} Cr). "
                f"Needs attention: {bottom['rm_emp_id']} ({bottom['total']:.2f} Cr)."
            ),
            "team_size": len(members),
            "team_avg_cr": _cr(average),
            "top_performer": {"employee_number": top["rm_emp_id"], "mtd_cr": _cr(top["total"])},
            "bottom_performer": {"employee_number": bottom["rm_emp_id"], "mtd_cr": _cr(bottom["total"])},
        }

    async def _ranking_summary(self, ctx: ToolContext) -> Optional[Dict[str, Any]]:
        own = rm_key(ctx.employee.employee_number)
        pool = aggregate_b2b(await self.sales.b2b_rows(SalesPeriod.MTD))
        ranked = sorted(pool.values(), key=lambda e: e["total"], reverse=True)
        for position, entry in enumerate(ranked):
            if entry["rm_emp_id"] == own:
                return {
                    "type": "ranking_summary",
                    "severity": "info",
                    "title": "Your current rank",
                    "detail": (
                        f"You are ranked #{position + 1} out of {len(ranked)} B2B employees "
                        f"by MTD sales ({entry['total']:.2f} Cr)."
                    ),
                    "rank": position + 1,
                    "total_employees": len(ranked),
                    "your_mtd_cr": _cr(entry["total"]),
                }
        return None


class CompanySummaryTool(ToolHandler):
    description = (
        "Get a company-wide performance summary across all verticals (B2B and B2C): MTD and YTD totals, "
        "category and zone breakdowns, top performers and a combined company total. Use this for "
        "leadership questions about overall business performance."
    )
    Arguments = CompanySummaryArgs

    async def run(self, args: CompanySummaryArgs, ctx: ToolContext) -> Dict[str, Any]:
        if not ctx.visible.everyone:
            raise ToolExecutionError("get_company_summary", "Company-wide figures are not available at your access level.")
        return await self.company_summary(ctx, period=args.period, include_top=args.include_top_performers)


class QueryDatabaseTool(ToolHandler):
    description = (
        "Execute a custom read-only Cosmos DB SQL query for ad-hoc questions the other tools do not cover. "
        "Rules: a single SELECT statement only; query one data table using the form "
        "`SELECT ... FROM <table> c WHERE ...`; only tables you have been granted; results are row-limited; "
        "always include a one-sentence explanation for the audit log."
    )
    Arguments = QueryDatabaseArgs

    async def run(self, args: QueryDatabaseArgs, ctx: ToolContext) -> Dict[str, Any]:
        prepared = self.query_guard.prepare(args.sql, ctx)
        self.query_guard.audit(prepared, ctx, args.explanation)
        try:
            rows = await self.sales.run_query(prepared.table, prepared.sql, prepared.parameters)
        except Exception as e:
            logger.error("query_database failed", employee_id=ctx.employee.id, sql=prepared.sql, error=str(e))
            raise ToolExecutionError("query_database", f"Query failed: {e}") from e

        rows = self.query_guard.filter_rows(rows, prepared, ctx)
        capped = rows[: prepared.limit]
        return {
            "row_count": len(capped),
            "total_found": len(rows),
            "rows": capped,
            "explanation": args.explanation,
        }
