import contextlib
import functools
import logging
from typing import Any, AsyncIterator, Awaitable, Callable
import uuid

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

import config
import db
from domain.errors import ErrorKind, StoreError
from domain.repository import RecipesRepository
from domain.store import DocumentStore


logger = logging.getLogger(__name__)


SERVICE = "Recipe Collection API"
VERSION = "1.0.0"
CORRELATION_ID_HEADER = "X-Correlation-Id"


STATUS_CODES = {
    ErrorKind.CONFLICT: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.QUERY_SYNTAX: 400,
    ErrorKind.PERMANENT: 400,
    ErrorKind.TRANSIENT: 503,
    ErrorKind.RATE_LIMITED: 503,
    ErrorKind.TIMEOUT: 503,
}


def aJSONResponse(route: Callable[..., Awaitable[Any | tuple[Any, int]]]):
    @functools.wraps(route)
    async def wrapper(*args: Any, **kwargs: Any) -> JSONResponse:
        resp = await route(*args, **kwargs)
        if not isinstance(resp, tuple):
            data, code = resp, 200
        else:
            data, code = resp
        return JSONResponse(data, status_code=code)

    return wrapper


async def correlation_id(request: Request, call_next: RequestResponseEndpoint) -> Response:
    cid = request.headers.get(CORRELATION_ID_HEADER) or str(uuid.uuid4())
    request.state.correlation_id = cid
    response = await call_next(request)
    response.headers[CORRELATION_ID_HEADER] = cid
    return response


async def store_error(request: Request, exc: StoreError) -> JSONResponse:
    cid = getattr(request.state, "correlation_id", None)
    status = STATUS_CODES[exc.kind]
    if status >= 500:
        logger.error("Store failure for correlation ID %s: %r", cid, exc)
    else:
        logger.warning("Request failed for correlation ID %s: %r", cid, exc)
    return JSONResponse(
        {**exc.to_dict(), "correlationId": cid},
        status_code=status,
    )


@aJSONResponse
async def homepage(request: Request) -> dict[str, str]:
    return {"service": SERVICE, "version": VERSION}


@aJSONResponse
async def health(request: Request) -> tuple[dict[str, str], int]:
    store: DocumentStore = request.app.state.store
    if await store.ping():
        return {"status": "healthy"}, 200
    return {"status": "unhealthy"}, 503


@aJSONResponse
async def recipes(request: Request) -> list[dict[str, Any]]:
    repo: RecipesRepository = request.app.state.repo
    found = await repo.list(tag=request.query_params.get("tag"))
    return [r.to_dict() for r in found]


async def recipe_detail(request: Request) -> Response:
    id = request.path_params["id"]
    repo: RecipesRepository = request.app.state.repo
    match request.method.lower():
        case "get":
            found = await repo.get(id)
            if found is None:
                raise StoreError(ErrorKind.NOT_FOUND, f"Recipe {id!r} not found.")
            recipe, ingredients = found
            return JSONResponse(
                {**recipe.to_dict(), "ingredients": [i.to_dict() for i in ingredients]}
            )
        case "delete":
            await repo.delete(id)
            return Response(status_code=204)
        case _:
            raise ValueError("Unsupported method.")


def create_app(
    conf: config.Config | None = None,
    store: DocumentStore | None = None,
) -> Starlette:
    conf = config.Config() if conf is None else conf

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        logging.basicConfig(level=conf.log_level)
        app.state.store = db.create_store(conf) if store is None else store
        app.state.repo = RecipesRepository(
            app.state.store, partition_key=conf.partition_key
        )
        yield
        close = getattr(app.state.store, "close", None)
        if close is not None:
            await close()

    return Starlette(
        debug=True if conf.env == config.Env.local else False,
        routes=[
            Route("/", homepage),
            Route("/health", health),
            Route("/recipes", recipes),
            Route("/recipes/{id}", recipe_detail, methods=["GET", "DELETE"]),
        ],
        middleware=[Middleware(BaseHTTPMiddleware, dispatch=correlation_id)],
        exception_handlers={StoreError: store_error},
        lifespan=lifespan,
    )


app = create_app()
