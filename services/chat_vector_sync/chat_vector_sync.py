"""Batch job runner entry point.

Runs one of the migration jobs against the configured store and index.

Usage:
    python -m services.chat_vector_sync.chat_vector_sync reindex
    python -m services.chat_vector_sync.chat_vector_sync migrate-agent
"""

import argparse
import asyncio
import json
import signal

from services.chat_vector_sync.MigrationService import MigrationService
from services.chat_vector_sync.SyncService import SyncService
from services.chat_vector_sync.VectorRecordMapper import VectorRecordMapper
from shared.clients.ClientManager import ClientManager
from shared.clients.embed.EmbedClientInterface import EmbedClientInterface
from shared.clients.llm.LLMClientInterface import LLMClientInterface
from shared.clients.rag.RAGClientInterface import RAGClientInterface
from shared.clients.store.StoreClientInterface import StoreClientInterface
from shared.exceptions import ServiceError
from shared.helper.HelperConfig import HelperConfig
from shared.logging.logging_setup import setup_logging

JOBS = ("reindex", "migrate-agent")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a vector index batch job.")
    parser.add_argument("job", choices=JOBS, help="reindex: rebuild the index from the store; migrate-agent: create missing bio records")
    return parser.parse_args(argv)


async def do_boot_clients(clients: list, logger) -> bool:
    """Boot every client and check its backend. Any failure aborts the job.

    Returns:
        bool: True when every backend answered its health check successfully.
    """
    for client in clients:
        try:
            await client.boot()
            response = await client.do_healthcheck()
        except ServiceError as e:
            logger.error(f"Error booting {client.get_client_type()} client {client.get_engine_name()}: {e}. Aborting.")
            return False
        if not response.is_success:
            logger.error(
                f"{client.get_client_type()} client {client.get_engine_name()} failed its health check "
                f"with status {response.status_code}. Aborting."
            )
            return False
    return True


def install_cancel_handlers(loop: asyncio.AbstractEventLoop, migration_service: MigrationService, logger) -> None:
    """Let SIGINT and SIGTERM cancel the running job instead of killing it mid-write."""
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, migration_service.request_cancel)
        except NotImplementedError:
            logger.warning(f"Cannot handle {sig.name} on this platform; the job can only be killed.")


async def main(job: str) -> int:
    """Boot the clients, run the job and print its result as JSON.

    Returns:
        int: Process exit code, 0 when the job finished without failures.
    """
    logger = setup_logging()
    config = HelperConfig(logger=logger)

    embed_client: EmbedClientInterface = ClientManager(config, "embed").get_client()
    rag_client: RAGClientInterface = ClientManager(config, "rag").get_client()
    store_client: StoreClientInterface = ClientManager(config, "store").get_client()
    llm_client: LLMClientInterface | None = None
    if job == "migrate-agent":
        llm_client = ClientManager(config, "llm").get_client()
    clients = [client for client in (embed_client, rag_client, store_client, llm_client) if client is not None]

    try:
        # every client is required; a job without one of them has nothing to do
        if not await do_boot_clients(clients, logger):
            return 1
        await rag_client.do_ensure_index()

        mapper = VectorRecordMapper(helper_config=config, embed_client=embed_client)
        sync_service = SyncService(
            helper_config=config,
            mapper=mapper,
            rag_client=rag_client,
            store_client=store_client,
        )
        migration_service = MigrationService(
            helper_config=config,
            sync_service=sync_service,
            rag_client=rag_client,
            store_client=store_client,
            llm_client=llm_client,
        )
        install_cancel_handlers(asyncio.get_running_loop(), migration_service, logger)

        if job == "reindex":
            result = await migration_service.do_full_reindex()
        else:
            result = await migration_service.do_migrate_agent_profiles()
        print(json.dumps(result.model_dump(), indent=2))
        return 1 if result.failed_ids else 0
    finally:
        for client in clients:
            await client.close()


if __name__ == "__main__":
    args = parse_args()
    raise SystemExit(asyncio.run(main(args.job)))
