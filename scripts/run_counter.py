"""CLI entrypoint that races increment workflows against one guarded counter."""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from cloudlock.core.locks import LockManager
from cloudlock.core.settings import LockSettings, create_lease_store, create_lock_manager
from cloudlock.utils.logging import get_logger


logger = get_logger("CounterCLI")


async def increment(manager: LockManager, name: str, worker: int) -> None:
    scope = manager.lock(name)
    async with scope as acquired:
        if not acquired:
            raise RuntimeError(f"worker {worker} could not acquire {name}")
        current = int((await scope.handle.read()).decode("utf-8"))
        await scope.handle.write(str(current + 1).encode("utf-8"))
        logger.info("Worker %d wrote %d", worker, current + 1)
        await scope.handle.release()


async def main() -> None:
    parser = argparse.ArgumentParser(description="Run concurrent lease-guarded counter increments.")
    parser.add_argument("--config", type=Path, default=Path("config/cloudlock.example.yml"), help="Path to lock settings YAML")
    parser.add_argument("--object", default="counter", help="Name of the guarded object")
    parser.add_argument("--workers", type=int, default=3, help="Number of concurrent increment workflows")
    parser.add_argument("--keep", action="store_true", help="Keep the counter object afterwards")
    args = parser.parse_args()

    settings = LockSettings.from_file(args.config) if args.config.exists() else LockSettings.from_env()
    store = create_lease_store(settings)
    if hasattr(store, "ensure_container"):
        await store.ensure_container()
    manager = create_lock_manager(settings, store)
    logger.info("Using %s backend with %d workers", settings.backend, args.workers)

    try:
        target = await store.create(args.object, b"0")
        await asyncio.gather(*(increment(manager, args.object, i) for i in range(args.workers)))
        final = (await target.read()).decode("utf-8")
        logger.info("Final value of %s: %s", args.object, final)
        print(final)
        if not args.keep:
            await store.delete(args.object)
    finally:
        await manager.close()


if __name__ == "__main__":
    asyncio.run(main())
