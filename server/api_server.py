"""FastAPI application entry point for chat_vector_sync."""

import asyncio
import os
from contextlib import asynccontextmanager, suppress
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from server.core.AutoResponseService import AutoResponseService
from server.core.ContextRetriever import ContextRetriever
from server.routers.AdminRouter import router as admin_router
from server.routers.AutoResponseRouter import router as auto_response_router
from server.routers.MigrationRouter import router as migration_router
from server.routers.SyncRouter import router as sync_router
from services.chat_vector_sync.ChangeFeed import ChangeFeed
from services.chat_vector_sync.MigrationService import MigrationService
from services.chat_vector_sync.StoreWatcher import StoreWatcher
from services.chat_vector_sync.SyncService import SyncService
from services.chat_vector_sync.VectorRecordMapper import VectorRecordMapper
from shared.clients.ClientInterface import ClientInterface
from shared.clients.ClientManager import ClientManager
from shared.exceptions import (
    AuthorizationError,
    MigrationInProgressError,
    ServiceError,
    SyncFailure,
    ValidationError,
)
from shared.helper.HelperConfig import HelperConfig
from shared.logging.logging_setup import setup_logging

logging = setup_logging()
app_version = os.getenv("APP_VERSION", "unknown")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # when the app starts
    app.state.logging = logging
    app.state.helper_config = helper_config = HelperConfig(logger=logging)

    embed_client = ClientManager(helper_config, "embed").get_client()
    rag_client = ClientManager(helper_config, "rag").get_client()
    llm_client = ClientManager(helper_config, "llm").get_client()
    store_client = ClientManager(helper_config, "store").get_client()
    clients: list[ClientInterface] = [embed_client, rag_client, llm_client, store_client]

    logging.info("Booting all clients...")
    for client in clients:
        await client.boot()
    logging.info("All clients booted successfully.")

    await check_connections(clients)
    await rag_client.do_ensure_index()

    mapper = VectorRecordMapper(helper_config=helper_config, embed_client=embed_client)
    app.state.sync_service = sync_service = SyncService(
        helper_config=helper_config,
        mapper=mapper,
        rag_client=rag_client,
        store_client=store_client,
    )
    app.state.change_feed = change_feed = ChangeFeed(helper_config=helper_config)
    sync_service.register(change_feed)
    app.state.migration_service = MigrationService(
        helper_config=helper_config,
        sync_service=sync_service,
        rag_client=rag_client,
        store_client=store_client,
        llm_client=llm_client,
    )
    context_retriever = ContextRetriever(
        helper_config=helper_config,
        rag_client=rag_client,
        embed_client=embed_client,
        store_client=store_client,
    )
    app.state.auto_response_service = AutoResponseService(
        helper_config=helper_config,
        context_retriever=context_retriever,
        llm_client=llm_client,
        store_client=store_client,
    )

    watcher: StoreWatcher | None = None
    watcher_task: asyncio.Task | None = None
    if helper_config.get_bool_val("STORE_WATCH_ENABLED", default=False):
        watcher = StoreWatcher(helper_config=helper_config, store_client=store_client, feed=change_feed)
        watcher_task = asyncio.create_task(watcher.do_run())
        watcher_task.add_done_callback(watcher.log_exit)

    # while the app is running...
    yield

    # when the app shuts down, stop the watcher and close all client connections
    if watcher is not None and watcher_task is not None:
        watcher.stop()
        if not watcher_task.done():
            watcher_task.cancel()
            with suppress(asyncio.CancelledError):
                await watcher_task
    logging.info("Shutting down, closing all clients...")
    for client in clients:
        await client.close()
    logging.info("All clients closed.")


app = FastAPI(
    title="chat_vector_sync",
    description=(
        "Keeps a semantic index (Pinecone or Qdrant) in step with the chat store "
        "and serves ranked context to the AI auto-responder."
    ),
    version=app_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sync_router)
app.include_router(migration_router)
app.include_router(admin_router)
app.include_router(auto_response_router)


def _error_response(status_code: int, error: Exception | str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": str(error)})


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(400, "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}" for error in exc.errors()
    ))


@app.exception_handler(ValidationError)
async def handle_validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return _error_response(400, exc)


@app.exception_handler(AuthorizationError)
async def handle_authorization_error(request: Request, exc: AuthorizationError) -> JSONResponse:
    logging.warning("Rejected administrative request to %s.", request.url.path)
    return _error_response(403, exc)


@app.exception_handler(MigrationInProgressError)
async def handle_migration_in_progress(request: Request, exc: MigrationInProgressError) -> JSONResponse:
    return _error_response(409, exc)


@app.exception_handler(SyncFailure)
async def handle_sync_failure(request: Request, exc: SyncFailure) -> JSONResponse:
    logging.error("Unrecoverable sync failure for %s: %s", exc.entity_id, exc.cause)
    return _error_response(500, exc)


@app.exception_handler(ServiceError)
async def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
    logging.error("Request to %s failed: %s", request.url.path, exc)
    return _error_response(500, exc)


async def check_connections(clients: list[ClientInterface]) -> None:
    """Check connectivity to all configured backends on startup.

    Store and completion failures are non-fatal (sync by HTTP and retrieval
    still work). Index and embedding failures are fatal.

    Raises:
        ServiceError: If a critical backend (index or embedding) is not reachable.
    """
    for client in clients:
        try:
            result = await client.do_healthcheck()
            healthy = result.is_success
            reason = f"status {result.status_code}"
        except ServiceError as e:
            healthy = False
            reason = str(e)
        if healthy:
            continue
        if client.get_client_type() in ("rag", "embed"):
            raise ServiceError(
                f"{client.get_client_type()} client '{client.__class__.__name__}' is not reachable ({reason})."
            )
        logging.warning(
            "%s client '%s' is not reachable (%s). Dependent features may fail.",
            client.get_client_type(),
            client.__class__.__name__,
            reason,
        )


if __name__ == "__main__":
    import uvicorn

    logging.info(
        "Starting chat_vector_sync API Server v%s from root dir: %s on port 8000...",
        app_version,
        os.environ.get("ROOT_DIR", "unknown"),
    )
    uvicorn.run(app, host="0.0.0.0", port=8000)
