from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import Settings
from .core.bridge import RelayBridge
from .core.routing import RoomRouter
from .discord.client import BridgeDiscordBot
from .matrix.client import MatrixBridgeClient
from .store.factory import build_correlation_store

logger = logging.getLogger("matrix_discord_bridge")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("discord.gateway").setLevel(logging.WARNING)
    logging.getLogger("discord.http").setLevel(logging.WARNING)
    logging.getLogger("nio.responses").setLevel(logging.ERROR)
    logging.getLogger("nio.rooms").setLevel(logging.WARNING)


def _is_process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _acquire_instance_lock(lock_path: Path) -> None:
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    if lock_path.exists():
        stale_pid = 0
        with contextlib.suppress(Exception):
            stale_pid = int(lock_path.read_text(encoding="utf-8").strip() or "0")
        if stale_pid > 0 and stale_pid != os.getpid() and _is_process_alive(stale_pid):
            raise RuntimeError(f"Bridge is already running (pid={stale_pid}). Stop it before starting a new one.")
        with contextlib.suppress(Exception):
            lock_path.unlink()

    lock_path.write_text(str(os.getpid()), encoding="utf-8")


def _release_instance_lock(lock_path: Path) -> None:
    with contextlib.suppress(Exception):
        if lock_path.exists():
            lock_path.unlink()


@dataclass(slots=True)
class BridgeRuntime:
    store: Any
    bridge: RelayBridge
    discord: BridgeDiscordBot
    matrix: MatrixBridgeClient


def build_bridge(settings: Settings) -> BridgeRuntime:
    store = build_correlation_store(
        settings.sqlite_path,
        settings.correlation_backend,
        settings.correlation_postgres_dsn,
    )
    bridge = RelayBridge(store, RoomRouter(settings.room_pairs))
    discord_bot = BridgeDiscordBot(settings=settings, bridge=bridge)
    matrix_client = MatrixBridgeClient(settings=settings, bridge=bridge)
    return BridgeRuntime(store=store, bridge=bridge, discord=discord_bot, matrix=matrix_client)


async def _run_shutdown_step(label: str, coro: object, *, timeout: float) -> None:
    try:
        await asyncio.wait_for(coro, timeout=timeout)  # type: ignore[arg-type]
    except asyncio.TimeoutError:
        logger.warning("Shutdown step timed out: %s", label)
    except Exception as exc:
        logger.warning("Shutdown step failed: %s (%s)", label, exc)


async def _run_bridge(settings: Settings) -> None:
    runtime = build_bridge(settings)
    await runtime.store.init()
    logger.info(
        "Correlation store ready (backend=%s, pairs=%s)",
        getattr(runtime.store, "backend_name", "unknown"),
        len(settings.room_pairs),
    )

    discord_task = asyncio.create_task(runtime.discord.start(settings.discord_token), name="discord-client")
    matrix_task = asyncio.create_task(runtime.matrix.run(), name="matrix-client")
    try:
        done, _ = await asyncio.wait({discord_task, matrix_task}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None:
                raise exc
            logger.warning("Client task %s stopped; shutting the bridge down", task.get_name())
    finally:
        await _run_shutdown_step("matrix.close", runtime.matrix.close(), timeout=8.0)
        if not runtime.discord.is_closed():
            await _run_shutdown_step("discord.close", runtime.discord.close(), timeout=8.0)
        for task in (discord_task, matrix_task):
            task.cancel()
        await asyncio.gather(discord_task, matrix_task, return_exceptions=True)
        await _run_shutdown_step("store.close", runtime.store.close(), timeout=6.0)


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    settings.validate()
    lock_path = settings.sqlite_path.parent / "matrix_discord_bridge.pid"
    _acquire_instance_lock(lock_path)
    try:
        asyncio.run(_run_bridge(settings))
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
    finally:
        _release_instance_lock(lock_path)
