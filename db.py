"""Cosmos DB backed document store and the choice between it and memory."""

import logging
from typing import Any, Mapping, TypeVar

from azure.core.exceptions import AzureError, ServiceRequestError
from azure.cosmos import exceptions
from azure.cosmos.aio import ContainerProxy, CosmosClient

import config
from domain import errors
from domain.documents import DocumentRegistry
from domain.errors import ErrorKind, StoreError
from domain.models import recipe_documents
from domain.query import Parameter, parse
from domain.retry import RetryPolicy, classify
from domain.store import DocumentStore, InMemoryDocumentStore, check_identity


logger = logging.getLogger(__name__)


D = TypeVar("D")


TRANSIENT_STATUS_CODES = {408, 500, 503}

RETRY_AFTER_HEADER = "x-ms-retry-after-ms"


def classify_cosmos(exc: Exception) -> StoreError | None:
    if isinstance(exc, ServiceRequestError):
        return StoreError(ErrorKind.TRANSIENT, str(exc))
    if not isinstance(exc, exceptions.CosmosHttpResponseError):
        return classify(exc)

    status = exc.status_code
    message = exc.http_error_message or str(exc)
    if status == 404:
        # A sub status means the database or container is missing, not the item.
        if exc.sub_status:
            return StoreError(
                ErrorKind.PERMANENT,
                f"Cosmos DB returned 404/{exc.sub_status}: {message}",
            )
        return StoreError(ErrorKind.NOT_FOUND, message)
    if status == 409:
        return StoreError(ErrorKind.CONFLICT, message)
    if status == 429:
        return StoreError(
            ErrorKind.RATE_LIMITED, message, retry_after=_retry_after(exc)
        )
    if status in TRANSIENT_STATUS_CODES:
        return StoreError(ErrorKind.TRANSIENT, message)
    return StoreError(ErrorKind.PERMANENT, f"Cosmos DB returned {status}: {message}")


def _retry_after(exc: exceptions.CosmosHttpResponseError) -> float | None:
    headers = exc.headers or {}
    raw = headers.get(RETRY_AFTER_HEADER)
    if raw is None:
        return None
    try:
        return float(raw) / 1000
    except (TypeError, ValueError):
        return None


class CosmosDocumentStore:
    """Document store over a Cosmos DB NoSQL container.

    Cosmos takes the partition key from the document body, so the explicit
    partition key is written to (or checked against) `partition_key_path`.
    Queries are validated with the same parser as the in-memory store before
    they are sent, filtering and ordering then happen server side.
    """

    def __init__(
        self,
        container: ContainerProxy,
        *,
        registry: DocumentRegistry | None = None,
        retry: RetryPolicy | None = None,
        partition_key_path: str = "pk",
        client: CosmosClient | None = None,
    ) -> None:
        self.container = container
        self.registry = recipe_documents() if registry is None else registry
        self.retry = RetryPolicy() if retry is None else retry
        self.partition_key_path = partition_key_path.lstrip("/")
        self.client = client

    @classmethod
    def from_connection_string(
        cls,
        connection_string: str,
        *,
        database: str,
        container: str,
        **kwargs: Any,
    ) -> "CosmosDocumentStore":
        client = CosmosClient.from_connection_string(connection_string)
        proxy = client.get_database_client(database).get_container_client(container)
        return cls(proxy, client=client, **kwargs)

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()

    def _body(self, item: Any, partition_key: str) -> dict[str, Any]:
        body = self.registry.encode(item)
        existing = body.setdefault(self.partition_key_path, partition_key)
        if existing != partition_key:
            raise StoreError(
                ErrorKind.PERMANENT,
                f"Document partition key {existing!r} does not match {partition_key!r}.",
            )
        return body

    async def _run(self, op: Any, name: str, timeout: float | None) -> Any:
        return await self.retry.run(
            op, name=name, timeout=timeout, classifier=classify_cosmos
        )

    async def create(
        self, item: D, partition_key: str, *, timeout: float | None = None
    ) -> D:
        self.registry.id_of(item)
        body = self._body(item, partition_key)

        async def op() -> dict[str, Any]:
            return await self.container.create_item(body=body)

        try:
            data = await self._run(op, "create", timeout)
        except StoreError as e:
            if e.kind is ErrorKind.CONFLICT:
                raise errors.conflict(body["id"], partition_key) from e
            raise
        return self.registry.decode(data)

    async def get(
        self, id: str, partition_key: str, *, timeout: float | None = None
    ) -> Any | None:
        async def op() -> dict[str, Any]:
            return await self.container.read_item(item=id, partition_key=partition_key)

        try:
            data = await self._run(op, "get", timeout)
        except StoreError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                return None
            raise
        return self.registry.decode(data)

    async def query(
        self,
        query: str,
        parameters: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> list[Any]:
        parsed = parse(query)
        parameters = parameters or {}
        values: dict[str, Any] = {}
        for condition in parsed.conditions:
            if not isinstance(condition.value, Parameter):
                continue
            name = condition.value.name
            for key in (f"@{name}", name):
                if key in parameters:
                    values[f"@{name}"] = parameters[key]
                    break
            else:
                # An unbound parameter matches nothing.
                return []

        async def op() -> list[dict[str, Any]]:
            items = self.container.query_items(
                query=query,
                parameters=[{"name": k, "value": v} for k, v in values.items()],
            )
            return [item async for item in items]

        data = await self._run(op, "query", timeout)
        return [self.registry.decode(d) for d in data]

    async def update(
        self, item: D, id: str, partition_key: str, *, timeout: float | None = None
    ) -> D:
        check_identity(self.registry, item, id)
        body = self._body(item, partition_key)

        async def op() -> dict[str, Any]:
            return await self.container.replace_item(item=id, body=body)

        try:
            data = await self._run(op, "update", timeout)
        except StoreError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                raise errors.not_found(id, partition_key) from e
            raise
        return self.registry.decode(data)

    async def delete(
        self, id: str, partition_key: str, *, timeout: float | None = None
    ) -> None:
        async def op() -> None:
            await self.container.delete_item(item=id, partition_key=partition_key)

        try:
            await self._run(op, "delete", timeout)
        except StoreError as e:
            if e.kind is not ErrorKind.NOT_FOUND:
                raise
            logger.debug("delete of absent %s/%s is a no-op", partition_key, id)

    async def ping(self) -> bool:
        try:
            await self.container.read()
        except AzureError:
            logger.exception("Cosmos DB health check failed")
            return False
        return True


def create_store(
    conf: config.Config,
    registry: DocumentRegistry | None = None,
) -> DocumentStore:
    """Pick the store once, at startup.

    A configured connection string selects Cosmos DB, otherwise documents
    live in memory.
    """
    registry = recipe_documents() if registry is None else registry
    retry = conf.retry_policy()

    if conf.cosmos_connection_string:
        logger.info(
            "Using Cosmos DB container %s/%s",
            conf.cosmos_database,
            conf.cosmos_container,
        )
        return CosmosDocumentStore.from_connection_string(
            conf.cosmos_connection_string,
            database=conf.cosmos_database,
            container=conf.cosmos_container,
            registry=registry,
            retry=retry,
            partition_key_path=conf.partition_key_path,
        )

    logger.info("No Cosmos DB connection configured, using the in-memory store.")
    return InMemoryDocumentStore(registry, retry=retry)
