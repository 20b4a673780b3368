"""
Tests for the tool catalogue, dispatch and the data-fetching handlers.
"""

import pytest

from fundsagent.models.message import ToolCall
from fundsagent.services.tool_registry import ToolName, available_tools


def call(name, **arguments):
    return ToolCall(name=name, arguments=arguments)


def names(definitions):
    return [d["function"]["name"] for d in definitions]


class TestCatalogue:
    """Which tools each grant is offered."""

    @pytest.mark.asyncio
    async def test_own_only_rm(self, tool_registry, caller):
        _, grant = await caller("1101")

        assert names(tool_registry.definitions(grant)) == [
            "get_my_performance",
            "get_team_performance",
            "get_rankings",
            "get_employee_info",
            "get_proactive_insights",
        ]

    @pytest.mark.asyncio
    async def test_manager_with_query_override(self, tool_registry, caller):
        _, grant = await caller("1100")
        offered = names(tool_registry.definitions(grant))

        assert "query_database" in offered
        assert "get_org_structure" in offered
        assert "get_company_summary" not in offered

    @pytest.mark.asyncio
    async def test_leadership_gets_everything(self, tool_registry, caller):
        _, grant = await caller("1000")

        assert names(tool_registry.definitions(grant)) == [name.value for name in ToolName]

    @pytest.mark.asyncio
    async def test_exclusion(self, caller):
        _, grant = await caller("1000")

        assert ToolName.GET_ORG_STRUCTURE not in available_tools(grant, exclude=[ToolName.GET_ORG_STRUCTURE])

    @pytest.mark.asyncio
    async def test_definitions_carry_argument_schema(self, tool_registry, caller):
        _, grant = await caller("1100")
        definitions = {d["function"]["name"]: d for d in tool_registry.definitions(grant)}

        parameters = definitions["query_database"]["function"]["parameters"]
        assert definitions["query_database"]["type"] == "function"
        assert set(parameters["required"]) == {"sql", "explanation"}
        assert "title" not in parameters


class TestDispatch:
    """Failures come back as error evidence, never as exceptions."""

    @pytest.mark.asyncio
    async def test_unknown_tool(self, tool_registry, context_for):
        ctx = await context_for("1101")

        result = await tool_registry.execute(call("get_salaries"), ctx)

        assert result.payload == {"error": "Unknown tool: get_salaries"}
        assert result.is_error

    @pytest.mark.asyncio
    async def test_hidden_tool_is_refused(self, tool_registry, context_for):
        ctx = await context_for("1101")

        result = await tool_registry.execute(call("query_database", sql="SELECT * FROM b2c c", explanation="x"), ctx)

        assert "not available" in result.payload["error"]

    @pytest.mark.asyncio
    async def test_excluded_tool_is_refused(self, tool_registry, context_for):
        ctx = await context_for("1100")

        result = await tool_registry.execute(
            call("get_org_structure"), ctx, exclude=[ToolName.GET_ORG_STRUCTURE]
        )

        assert result.is_error

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, tool_registry, context_for):
        ctx = await context_for("1101")

        result = await tool_registry.execute(call("get_employee_info"), ctx)

        assert result.payload["error"].startswith("Invalid arguments for get_employee_info")
        assert "query" in result.payload["error"]

    @pytest.mark.asyncio
    async def test_arguments_that_are_not_an_object(self, tool_registry, context_for):
        ctx = await context_for("1101")
        malformed = ToolCall.from_completion(
            {"id": "call_1", "function": {"name": "get_my_performance", "arguments": "[1, 2]"}}
        )

        result = await tool_registry.execute(malformed, ctx)

        assert result.tool_call_id == "call_1"
        assert "must be a JSON object" in result.payload["error"]

    @pytest.mark.asyncio
    async def test_execute_all_keeps_call_order(self, tool_registry, context_for):
        ctx = await context_for("1100")
        calls = [call("get_rankings"), call("nope"), call("get_my_performance", period="mtd")]

        for parallel in (False, True):
            results = await tool_registry.execute_all(calls, ctx, parallel=parallel)
            assert [r.name for r in results] == ["get_rankings", "nope", "get_my_performance"]
            assert [r.is_error for r in results] == [False, True, False]


class TestHandlers:
    """Handler results are limited to the caller's visible identities."""

    @pytest.mark.asyncio
    async def test_my_performance_sums_partner_rows(self, tool_registry, context_for):
        ctx = await context_for("1101")

        result = await tool_registry.execute(call("get_my_performance"), ctx)

        payload = result.payload
        assert payload["vertical"] == "B2B"
        assert payload["mtd"]["total_cr"] == 5.2
        assert payload["ytd_excluding_current_month"]["total_cr"] == 26.0
        assert payload["ytd_total_cr"] == 31.2

    @pytest.mark.asyncio
    async def test_my_performance_b2c(self, tool_registry, context_for):
        ctx = await context_for("1201")

        result = await tool_registry.execute(call("get_my_performance", period="MTD"), ctx)

        assert result.payload["vertical"] == "B2C"
        assert result.payload["data"]["net_inflow_mtd_cr"] == 1.8

    @pytest.mark.asyncio
    async def test_team_performance_for_own_only_is_empty(self, tool_registry, context_for):
        ctx = await context_for("1101")

        result = await tool_registry.execute(call("get_team_performance"), ctx)

        assert result.payload["team_size"] == 0
        assert result.payload["members"] == []

    @pytest.mark.asyncio
    async def test_team_performance_for_manager(self, tool_registry, context_for):
        ctx = await context_for("1100")

        result = await tool_registry.execute(call("get_team_performance"), ctx)

        members = result.payload["members"]
        assert [m["employee_number"] for m in members] == ["W1101", "W1103", "W1100", "W1102", "W1104"]
        assert members[0]["rm_name"] == "Neha Kulkarni"
        assert "W1301" not in {m["employee_number"] for m in members}

    @pytest.mark.asyncio
    async def test_rankings_keep_pool_positions(self, tool_registry, context_for):
        ctx = await context_for("1100")

        result = await tool_registry.execute(call("get_rankings", vertical="b2b"), ctx)

        payload = result.payload
        assert payload["total_employees_in_pool"] == 6
        assert [(r["rank"], r["employee_number"]) for r in payload["rankings"]] == [
            (1, "W1101"), (2, "W1103"), (4, "W1100"), (5, "W1102"), (6, "W1104"),
        ]

    @pytest.mark.asyncio
    async def test_rankings_for_own_only(self, tool_registry, context_for):
        ctx = await context_for("1102")

        result = await tool_registry.execute(call("get_rankings"), ctx)

        assert [(r["rank"], r["employee_number"]) for r in result.payload["rankings"]] == [(5, "W1102")]

    @pytest.mark.asyncio
    async def test_employee_info_hides_people_outside_scope(self, tool_registry, context_for):
        ctx = await context_for("1101")

        result = await tool_registry.execute(call("get_employee_info", query="Rohan"), ctx)

        assert "No employee found" in result.payload["message"]

    @pytest.mark.asyncio
    async def test_org_structure(self, tool_registry, context_for):
        ctx = await context_for("1100")

        result = await tool_registry.execute(call("get_org_structure", depth=2), ctx)

        root = result.payload["employee"]
        assert root["direct_reports_count"] == 3
        kiran = next(r for r in root["direct_reports"] if r["employee_number"] == "1103")
        assert [r["employee_number"] for r in kiran["direct_reports"]] == ["1104"]
        # the CEO is outside the manager's scope
        assert result.payload["reports_to"] is None

    @pytest.mark.asyncio
    async def test_org_structure_outside_scope(self, tool_registry, context_for):
        ctx = await context_for("1103")

        result = await tool_registry.execute(call("get_org_structure", employee_number="1100"), ctx)

        assert result.payload == {"error": "Employee 1100 not found"}

    @pytest.mark.asyncio
    async def test_proactive_insights_for_manager(self, tool_registry, context_for):
        ctx = await context_for("1100")

        result = await tool_registry.execute(call("get_proactive_insights"), ctx)

        insights = {i["type"]: i for i in result.payload["insights"]}
        assert insights["target_gap"]["severity"] == "medium"
        assert insights["target_gap"]["achievement_pct"] == 50.0
        assert insights["team_outlier"]["top_performer"]["employee_number"] == "W1101"
        assert insights["team_outlier"]["bottom_performer"]["employee_number"] == "W1104"
        assert insights["ranking_summary"]["rank"] == 4

    @pytest.mark.asyncio
    async def test_company_summary(self, tool_registry, context_for):
        ctx = await context_for("1000")

        result = await tool_registry.execute(call("get_company_summary"), ctx)

        payload = result.payload
        assert payload["b2b"]["total_employees"] == 6
        assert payload["b2b"]["mtd_total_cr"] == 17.6
        assert payload["b2c"]["mtd_net_inflow_cr"] == 2.5
        assert payload["b2b"]["top_performers_mtd"][0]["rm_name"] == "Neha Kulkarni"

    @pytest.mark.asyncio
    async def test_query_database_filters_rows(self, tool_registry, sales_repository, context_for):
        ctx = await context_for("1100")

        result = await tool_registry.execute(
            call("query_database", sql="SELECT * FROM employees c", explanation="Team directory"), ctx
        )

        numbers = sorted(row["employee_number"] for row in result.payload["rows"])
        assert numbers == ["1100", "1101", "1102", "1103", "1104"]
        assert result.payload["explanation"] == "Team directory"
        assert "ARRAY_CONTAINS" in sales_repository.queries[-1]["query"]

    @pytest.mark.asyncio
    async def test_query_database_rejection_is_evidence(self, tool_registry, context_for):
        ctx = await context_for("1100")

        result = await tool_registry.execute(
            call("query_database", sql="DROP TABLE employees", explanation="oops"), ctx
        )

        assert result.is_error
