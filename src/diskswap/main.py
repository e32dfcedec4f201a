"""FastAPI application for the Disk Swap add-on."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
import uvicorn

from diskswap import __version__, config
from diskswap.api.middleware import NormalizePathMiddleware
from diskswap.api.proxy import proxy_app
from diskswap.api.routes import router
from diskswap.services.job_store import JobStore
from diskswap.services.pipeline import get_orchestrator
from diskswap.utils.logging import setup_logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown hooks.

    Startup:
    - Initialize logger
    - Create data directories
    - Rehydrate the persisted clone job

    Shutdown:
    - Stop a running pipeline so its child processes do not outlive us
    """
    logger = setup_logger()
    logger.info(f"Disk Swap {__version__} starting up...")

    for directory in (config.DATA_DIR, config.IMAGE_DIR):
        directory.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Ensured directory exists: {directory}")

    job = JobStore().rehydrate()
    if job:
        logger.info(f"Rehydrated job {job.id}: status={job.status.value}")
    else:
        logger.info("No persisted job, starting fresh")

    logger.info(
        f"Disk Swap ready on port {config.INGRESS_PORT} "
        f"(sandbox proxy on {config.SANDBOX_PROXY_PORT})"
    )

    yield

    logger.info("Disk Swap shutting down...")
    await get_orchestrator().shutdown()


app = FastAPI(
    title="Disk Swap",
    description="Provision a USB disk with Home Assistant OS and a restored backup",
    version=__version__,
    lifespan=lifespan,
)
app.add_middleware(NormalizePathMiddleware)
app.include_router(router)

if config.STATIC_DIR.is_dir():
    app.mount("/", StaticFiles(directory=config.STATIC_DIR, html=True), name="ui")


async def serve() -> None:
    """Run the ingress app and the sandbox proxy until either one stops."""
    servers = [
        uvicorn.Server(
            uvicorn.Config(app, host="0.0.0.0", port=config.INGRESS_PORT, log_level="info")
        ),
        uvicorn.Server(
            uvicorn.Config(
                proxy_app,
                host="0.0.0.0",
                port=config.SANDBOX_PROXY_PORT,
                log_level="warning",
                access_log=False,
            )
        ),
    ]
    tasks = [asyncio.create_task(server.serve()) for server in servers]
    await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for server in servers:
        server.should_exit = True
    await asyncio.gather(*tasks)


def main():
    """Main entry point for running the servers."""
    asyncio.run(serve())


if __name__ == "__main__":
    main()
