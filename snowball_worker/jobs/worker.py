"""
Worker process runner.

Reads the desired role from CLI args or the WORKER_ROLE environment
variable and runs it until interrupted:

    dispatcher  consume every queue with its configured concurrency
    scheduler   enqueue recurring jobs on their cron schedule
    all         both in one process
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from snowball_worker.bootstrap import ServiceContainer, build_services
from snowball_worker.config import settings
from snowball_worker.infrastructure.observability.logging import get_logger, setup_logging

logger = get_logger(__name__)

RoleCoroutine = Callable[[ServiceContainer], Awaitable[None]]


async def run_dispatcher(services: ServiceContainer) -> None:
    tasks = services.dispatcher.start()
    try:
        await asyncio.gather(*tasks)
    finally:
        await services.dispatcher.stop()


async def run_scheduler(services: ServiceContainer) -> None:
    try:
        await services.scheduler.run()
    finally:
        services.scheduler.stop()


async def run_all(services: ServiceContainer) -> None:
    await asyncio.gather(run_dispatcher(services), run_scheduler(services))


ROLE_REGISTRY: dict[str, RoleCoroutine] = {
    "dispatcher": run_dispatcher,
    "scheduler": run_scheduler,
    "all": run_all,
}


def _resolve_role() -> str:
    """Pick the role from CLI args or WORKER_ROLE env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_ROLE", "all").strip().lower()


async def run_worker(role: str | None = None, services: ServiceContainer | None = None) -> None:
    """Run the requested worker role."""
    name = (role or _resolve_role()).strip().lower()
    if name not in ROLE_REGISTRY:
        raise ValueError(
            f"Unknown worker role '{name}'. "
            f"Available roles: {', '.join(sorted(ROLE_REGISTRY.keys()))}"
        )

    services = services or build_services()
    await services.start()
    logger.info("Starting background worker", role=name, environment=services.settings.environment)
    try:
        await ROLE_REGISTRY[name](services)
    finally:
        await services.close()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL)
    role = _resolve_role()
    try:
        asyncio.run(run_worker(role))
    except KeyboardInterrupt:
        logger.info("Worker interrupted, shutting down", role=role)


if __name__ == "__main__":
    main()
