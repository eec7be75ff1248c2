import asyncio
from typing import Any, AsyncIterator

from azure.cosmos import exceptions
import pytest

from db import CosmosDocumentStore, classify_cosmos, create_store
from config import Config
from domain.errors import ErrorKind, QuerySyntaxError, StoreError
from domain.models import Recipe, RecipeIngredient
from domain.repository import RecipesRepository
from domain.retry import RetryPolicy
from domain.store import InMemoryDocumentStore


PK = "recipe"


def cosmos_error(status: int, headers: dict[str, str] | None = None) -> Exception:
    err = exceptions.CosmosHttpResponseError(status_code=status, message=f"status {status}")
    err.headers = headers or {}
    return err


class FakeContainer:
    """Just enough of `ContainerProxy` for the store."""

    def __init__(self) -> None:
        self.items: dict[tuple[str, str], dict[str, Any]] = {}
        self.failures: list[Exception] = []
        self.queries: list[tuple[str, list[dict[str, Any]]]] = []
        self.results: list[dict[str, Any]] = []
        self.reachable = True

    def _fail(self) -> None:
        if self.failures:
            raise self.failures.pop(0)

    async def create_item(self, body: dict[str, Any]) -> dict[str, Any]:
        self._fail()
        key = (body["pk"], body["id"])
        if key in self.items:
            raise cosmos_error(409)
        self.items[key] = dict(body)
        return {**body, "_etag": "1"}

    async def read_item(self, item: str, partition_key: str) -> dict[str, Any]:
        self._fail()
        if (partition_key, item) not in self.items:
            raise cosmos_error(404)
        return dict(self.items[(partition_key, item)])

    def query_items(
        self, query: str, parameters: list[dict[str, Any]]
    ) -> AsyncIterator[dict[str, Any]]:
        self.queries.append((query, parameters))

        async def pages() -> AsyncIterator[dict[str, Any]]:
            self._fail()
            for result in self.results:
                yield result

        return pages()

    async def replace_item(self, item: str, body: dict[str, Any]) -> dict[str, Any]:
        self._fail()
        key = (body["pk"], item)
        if key not in self.items:
            raise cosmos_error(404)
        self.items[key] = dict(body)
        return dict(body)

    async def delete_item(self, item: str, partition_key: str) -> None:
        self._fail()
        if self.items.pop((partition_key, item), None) is None:
            raise cosmos_error(404)

    async def read(self) -> dict[str, Any]:
        if not self.reachable:
            raise cosmos_error(503)
        return {"id": "recipes"}


class NoSleep:
    def __init__(self) -> None:
        self.sleeps: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.sleeps.append(delay)


@pytest.fixture
def container() -> FakeContainer:
    return FakeContainer()


@pytest.fixture
def sleeps() -> NoSleep:
    return NoSleep()


@pytest.fixture
def store(container: FakeContainer, sleeps: NoSleep) -> CosmosDocumentStore:
    retry = RetryPolicy(sleep=sleeps, jitter=lambda a, b: 0.0)
    return CosmosDocumentStore(container, retry=retry)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    "status,kind",
    (
        (404, ErrorKind.NOT_FOUND),
        (409, ErrorKind.CONFLICT),
        (429, ErrorKind.RATE_LIMITED),
        (408, ErrorKind.TRANSIENT),
        (500, ErrorKind.TRANSIENT),
        (503, ErrorKind.TRANSIENT),
        (400, ErrorKind.PERMANENT),
        (403, ErrorKind.PERMANENT),
    ),
)
def test_classify_status_codes(status: int, kind: ErrorKind) -> None:
    err = classify_cosmos(cosmos_error(status))
    assert err is not None
    assert err.kind is kind


def test_classify_reads_retry_after() -> None:
    err = classify_cosmos(cosmos_error(429, {"x-ms-retry-after-ms": "500"}))
    assert err is not None
    assert err.retry_after == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_create_and_get(store: CosmosDocumentStore) -> None:
    recipe = Recipe(id="r1", title="Cookies", raw_text="", image_ref="img")
    await store.create(recipe, PK)

    got = await store.get("r1", PK)

    assert got == recipe
    assert await store.get("missing", PK) is None


@pytest.mark.asyncio
async def test_create_conflict_is_not_retried(
    store: CosmosDocumentStore, container: FakeContainer
) -> None:
    await store.create({"id": "d1"}, PK)
    with pytest.raises(StoreError) as info:
        await store.create({"id": "d1"}, PK)
    assert info.value.kind is ErrorKind.CONFLICT
    assert not info.value.retries_exhausted


@pytest.mark.asyncio
async def test_partition_key_is_written_or_checked(
    store: CosmosDocumentStore, container: FakeContainer
) -> None:
    await store.create({"id": "d1"}, "other")
    assert ("other", "d1") in container.items

    with pytest.raises(StoreError) as info:
        await store.create({"id": "d2", "pk": "recipe"}, "other")
    assert info.value.kind is ErrorKind.PERMANENT


@pytest.mark.asyncio
async def test_transient_failures_are_retried(
    store: CosmosDocumentStore, container: FakeContainer, sleeps: NoSleep
) -> None:
    container.failures = [cosmos_error(503), cosmos_error(408)]
    await store.create({"id": "d1"}, PK)
    assert sleeps.sleeps == pytest.approx([0.1, 0.2])


@pytest.mark.asyncio
async def test_transient_failures_exhaust(
    store: CosmosDocumentStore, container: FakeContainer
) -> None:
    container.failures = [cosmos_error(500) for _ in range(3)]
    with pytest.raises(StoreError) as info:
        await store.get("d1", PK)
    assert info.value.kind is ErrorKind.TRANSIENT
    assert info.value.attempts == 3
    assert info.value.retries_exhausted


@pytest.mark.asyncio
async def test_rate_limit_waits_for_retry_after(
    store: CosmosDocumentStore, container: FakeContainer, sleeps: NoSleep
) -> None:
    container.failures = [cosmos_error(429, {"x-ms-retry-after-ms": "750"})]
    await store.create({"id": "d1"}, PK)
    assert sleeps.sleeps == pytest.approx([0.75])


@pytest.mark.asyncio
async def test_update_and_delete(store: CosmosDocumentStore) -> None:
    with pytest.raises(StoreError) as info:
        await store.update({"id": "d1", "n": 1}, "d1", PK)
    assert info.value.kind is ErrorKind.NOT_FOUND

    await store.create({"id": "d1", "n": 1}, PK)
    await store.update({"id": "d1", "n": 2}, "d1", PK)
    assert (await store.get("d1", PK))["n"] == 2

    await store.delete("d1", PK)
    await store.delete("d1", PK)
    assert await store.get("d1", PK) is None


@pytest.mark.asyncio
async def test_query_sends_bound_parameters(
    store: CosmosDocumentStore, container: FakeContainer
) -> None:
    container.results = [{"id": "a", "type": "Unknown"}]
    query = "SELECT * FROM c WHERE c.type = @t AND c.recipeId = @r ORDER BY c.position"

    found = await store.query(query, {"@t": "Unknown", "r": "r1", "@unused": 1})

    assert found == [{"id": "a", "type": "Unknown"}]
    assert container.queries == [
        (query, [{"name": "@t", "value": "Unknown"}, {"name": "@r", "value": "r1"}])
    ]


@pytest.mark.asyncio
async def test_query_with_unbound_parameter_is_empty(
    store: CosmosDocumentStore, container: FakeContainer
) -> None:
    assert await store.query("SELECT * FROM c WHERE c.type = @t") == []
    assert container.queries == []


@pytest.mark.asyncio
async def test_query_syntax_checked_locally(
    store: CosmosDocumentStore, container: FakeContainer
) -> None:
    with pytest.raises(QuerySyntaxError):
        await store.query("SELECT * FROM c WHERE c.a = 1 OR c.b = 2")
    assert container.queries == []


@pytest.mark.asyncio
async def test_ping(store: CosmosDocumentStore, container: FakeContainer) -> None:
    assert await store.ping()
    container.reachable = False
    assert not await store.ping()


def test_create_store_without_connection_string_is_in_memory() -> None:
    store = create_store(Config(cosmos_connection_string=None))
    assert isinstance(store, InMemoryDocumentStore)
    assert store.retry.max_attempts == 3


def test_classify_missing_container_is_permanent() -> None:
    err = cosmos_error(404)
    err.sub_status = 1003
    got = classify_cosmos(err)
    assert got is not None
    assert got.kind is ErrorKind.PERMANENT


@pytest.mark.asyncio
async def test_get_from_missing_container_raises(
    store: CosmosDocumentStore, container: FakeContainer
) -> None:
    err = cosmos_error(404)
    err.sub_status = 1003
    container.failures = [err]
    with pytest.raises(StoreError) as info:
        await store.get("d1", PK)
    assert info.value.kind is ErrorKind.PERMANENT


@pytest.mark.asyncio
async def test_plain_dict_with_registered_tag_stays_a_dict(
    store: CosmosDocumentStore, container: FakeContainer
) -> None:
    doc = {"id": "a", "type": "Recipe"}

    created = await store.create(doc, PK)
    got = await store.get("a", PK)
    container.results = [dict(container.items[(PK, "a")])]
    found = await store.query("SELECT * FROM c WHERE c.type = @t", {"@t": "Recipe"})
    updated = await store.update({"id": "a", "type": "Recipe", "n": 2}, "a", PK)

    assert created["id"] == "a"
    assert got == {"id": "a", "type": "Recipe", "pk": PK}
    assert [d["id"] for d in found] == ["a"]
    assert updated["n"] == 2


@pytest.mark.asyncio
async def test_repository_with_other_partition_key(
    store: CosmosDocumentStore, container: FakeContainer
) -> None:
    repo = RecipesRepository(store, partition_key="kitchen")
    recipe = Recipe(id="r1", title="Cookies", raw_text="", image_ref="img")
    items = [
        RecipeIngredient(id="i0", recipe_id="r1", free_text="flour", position=0)
    ]

    await repo.add(recipe, items)
    await repo.update(Recipe(id="r1", title="Better", raw_text="", image_ref="img"))
    await repo.replace_ingredients(
        "r1", [RecipeIngredient(id="i1", recipe_id="r1", free_text="oats", position=0)]
    )

    assert {pk for pk, _ in container.items} == {"kitchen"}
    got = await repo.get("r1")
    assert got is not None
    assert got[0].title == "Better"
    assert got[0].pk == "kitchen"


class GatedSleep:
    """Sleeps until released, so a caller can be held inside a retry wait."""

    def __init__(self) -> None:
        self.waiting = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.waiting.set()
        await self.release.wait()


@pytest.mark.asyncio
async def test_retry_wait_does_not_block_other_callers(
    container: FakeContainer,
) -> None:
    sleep = GatedSleep()
    store = CosmosDocumentStore(
        container,  # type: ignore[arg-type]
        retry=RetryPolicy(sleep=sleep, jitter=lambda a, b: 0.0),
    )
    container.failures = [cosmos_error(429, {"x-ms-retry-after-ms": "500"})]

    throttled = asyncio.create_task(store.create({"id": "slow"}, PK))
    await asyncio.wait_for(sleep.waiting.wait(), timeout=1)

    await asyncio.wait_for(store.create({"id": "fast"}, PK), timeout=1)
    assert await asyncio.wait_for(store.get("fast", PK), timeout=1) is not None
    assert not throttled.done()

    sleep.release.set()
    await asyncio.wait_for(throttled, timeout=1)
    assert await store.get("slow", PK) is not None
