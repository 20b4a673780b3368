"""
Async access to the fundsagent Cosmos DB database.

Sessions, messages, memory, access grants, personas and the sales tables are
all containers of one database. Authentication goes through
DefaultAzureCredential; throttling and server errors are retried.
"""

from typing import Optional, Dict, Any, List
from azure.identity.aio import DefaultAzureCredential
from azure.cosmos.aio import CosmosClient as AsyncCosmosClient
from azure.cosmos import PartitionKey, exceptions
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
)
import structlog

from fundsagent.config.settings import CosmosDBSettings

logger = structlog.get_logger(__name__)

DEFAULT_PARTITION_PATH = "/id"


def _is_transient(exc: BaseException) -> bool:
    """Throttling, timeouts and 5xx are retried; other 4xx answers are final."""
    if isinstance(exc, exceptions.CosmosResourceNotFoundError):
        return False
    if isinstance(exc, exceptions.CosmosHttpResponseError):
        status = getattr(exc, "status_code", None)
        return status is None or status in (408, 429) or status >= 500
    return False


cosmos_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)


def partition_paths(settings: CosmosDBSettings) -> Dict[str, str]:
    """Partition key path per container; anything unlisted is keyed on /id."""
    return {
        settings.conversations_container: "/employee_id",
        settings.messages_container: "/conversation_id",
        settings.memory_container: "/employee_id",
    }


class CosmosDBClient:
    """
    Lazily connected handle on the fundsagent database.

    Containers are opened (and created when missing) the first time a
    repository touches them.
    """

    def __init__(self, settings: CosmosDBSettings):
        self.settings = settings
        self._credential = DefaultAzureCredential()
        self._client: Optional[AsyncCosmosClient] = None
        self._database = None
        self._handles: Dict[str, Any] = {}
        self._paths = partition_paths(settings)

        logger.info("Cosmos store configured", endpoint=settings.endpoint, database=settings.database_name)

    def _db(self):
        if self._database is None:
            if self._client is None:
                self._client = AsyncCosmosClient(url=self.settings.endpoint, credential=self._credential)
            self._database = self._client.get_database_client(self.settings.database_name)
            logger.info("Opened Cosmos database", database=self.settings.database_name)
        return self._database

    async def container(self, name: str):
        handle = self._handles.get(name)
        if handle is None:
            path = self._paths.get(name, DEFAULT_PARTITION_PATH)
            handle = await self._db().create_container_if_not_exists(id=name, partition_key=PartitionKey(path=path))
            self._handles[name] = handle
            logger.debug("Opened container", container=name, partition_path=path)
        return handle

    @cosmos_retry
    async def read_item(
        self,
        container_name: str,
        item_id: str,
        partition_key_value: str,
    ) -> Optional[Dict[str, Any]]:
        """Point read; None when the document does not exist."""
        handle = await self.container(container_name)
        try:
            return await handle.read_item(item=item_id, partition_key=partition_key_value)
        except exceptions.CosmosResourceNotFoundError:
            logger.debug("Document missing", container=container_name, item_id=item_id)
            return None

    @cosmos_retry
    async def upsert_item(self, container_name: str, item: Dict[str, Any]) -> Dict[str, Any]:
        handle = await self.container(container_name)
        try:
            return await handle.upsert_item(body=item)
        except exceptions.CosmosHttpResponseError as e:
            logger.error("Upsert rejected", container=container_name, item_id=item.get("id"), error=str(e))
            raise

    @cosmos_retry
    async def query_items(
        self,
        container_name: str,
        query: str,
        parameters: Optional[List[Dict[str, Any]]] = None,
        partition_key_value: Optional[str] = None,
        max_item_count: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Run a parameterised Cosmos SQL query and drain every page.

        Args:
            container_name: Container to query
            query: Cosmos SQL text using `@name` placeholders
            parameters: `[{"name": "@p", "value": ...}]`
            partition_key_value: Restrict to one partition; cross-partition otherwise
            max_item_count: Page size hint

        Returns:
            Every matching document
        """
        handle = await self.container(container_name)
        options: Dict[str, Any] = {}
        if partition_key_value:
            options["partition_key"] = partition_key_value
        if max_item_count:
            options["max_item_count"] = max_item_count

        try:
            docs = [doc async for doc in handle.query_items(query=query, parameters=parameters or [], **options)]
        except exceptions.CosmosHttpResponseError as e:
            logger.error("Query rejected", container=container_name, query=query, error=str(e))
            raise

        logger.debug("Query returned", container=container_name, rows=len(docs))
        return docs

    async def close(self):
        if self._client is not None:
            await self._client.close()
        self._client = None
        self._database = None
        self._handles.clear()
        await self._credential.close()
        logger.info("Cosmos store closed")
