import pytest

from fundsagent.config.settings import AccessSettings, AgentSettings, StreamSettings
from fundsagent.repositories.sample_data import build_sample_repositories
from fundsagent.services.access_service import AccessService
from fundsagent.services.conversation_service import ConversationService
from fundsagent.services.query_guard import QueryGuard
from fundsagent.services.stream_adapter import StreamAdapter
from fundsagent.services.tool_registry import build_tool_registry


@pytest.fixture
def repositories():
    return build_sample_repositories()


@pytest.fixture
def sales_repository(repositories):
    return repositories[0]


@pytest.fixture
def access_repository(repositories):
    return repositories[1]


@pytest.fixture
def conversation_repository(repositories):
    return repositories[2]


@pytest.fixture
def access_settings():
    return AccessSettings(identity_graph_ttl_seconds=60, query_result_limit=200, query_result_cap=1000)


@pytest.fixture
def agent_settings():
    return AgentSettings(max_tool_rounds=5, history_limit=20, engine_history_limit=6, parallel_tool_calls=False)


@pytest.fixture
def access_service(sales_repository, access_repository, access_settings):
    return AccessService(sales_repository, access_repository, access_settings)


@pytest.fixture
def query_guard(access_settings):
    return QueryGuard(access_settings)


@pytest.fixture
def tool_registry(sales_repository, access_service, query_guard):
    return build_tool_registry(sales_repository, access_service, query_guard)


@pytest.fixture
def stream_adapter():
    return StreamAdapter(StreamSettings(replay_chunk_size=4, replay_delay_ms=0))


@pytest.fixture
def conversation_service(conversation_repository, agent_settings):
    return ConversationService(conversation_repository, agent_settings)


@pytest.fixture
def caller(sales_repository, access_service):
    """Async factory: employee number -> (employee, grant)."""

    async def resolve(employee_number):
        employee = await sales_repository.find_employee(employee_number=employee_number)
        grant = await access_service.resolve_scope(employee)
        return employee, grant

    return resolve


@pytest.fixture
def context_for(caller, access_service):
    """Async factory: employee number -> ToolContext."""

    async def build(employee_number):
        employee, grant = await caller(employee_number)
        return await access_service.build_tool_context(employee, grant)

    return build
