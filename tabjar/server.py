"""
Runner: wires storage, the isolation core, the control server and the
mitmproxy host together on one event loop.

Usage::

    tabjar --port 8080 --control-port 8765 --state ./tabjar-state.json

then point the browser (or a browser-side shim that adds ``X-Tab-Id``)
at ``127.0.0.1:8080``.
"""

from __future__ import annotations

import asyncio
import signal
import sys
import time
import traceback
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import uvloop
from mitmproxy import options
from mitmproxy.tools.dump import DumpMaster

from tabjar.addon import TabJarAddOn
from tabjar.config import DEFAULT_CONFIG, IsolationConfig, ServerSettings, load_settings
from tabjar.control import ControlServer, ControlSurface
from tabjar.events import EventDispatcher
from tabjar.logs import get_logger, setup_logging
from tabjar.registry import TabSessionRegistry
from tabjar.rules import InMemoryRuleEngine, RuleIdAllocator, RuleSynthesizer
from tabjar.sessions import SessionCatalog
from tabjar.storage import JsonFileKeyValueStore, KeyValueStore, MemoryKeyValueStore, initialize
from tabjar.store import CookieStore

logger = get_logger(__name__)


@dataclass
class Core:
    """Every long-lived object of the isolation core, built once."""

    kv: KeyValueStore
    catalog: SessionCatalog
    store: CookieStore
    engine: InMemoryRuleEngine
    allocator: RuleIdAllocator
    synthesizer: RuleSynthesizer
    registry: TabSessionRegistry
    control: ControlSurface
    dispatcher: EventDispatcher


async def build_core(
    kv: KeyValueStore,
    config: IsolationConfig = DEFAULT_CONFIG,
    clock: Callable[[], float] = time.time,
    restore: bool = True,
) -> Core:
    """Seed storage and assemble the core around *kv*."""
    await initialize(kv)
    catalog = SessionCatalog(kv, clock=clock)
    store = CookieStore(kv, clock=clock)
    engine = InMemoryRuleEngine(cap=config.rule_cap)
    allocator = RuleIdAllocator(kv, block_size=config.rule_id_block_size)
    synthesizer = RuleSynthesizer(store, allocator, engine, config)
    registry = TabSessionRegistry(kv, catalog, store, synthesizer)
    control = ControlSurface(catalog, registry, store)
    dispatcher = EventDispatcher(registry, control)
    if restore:
        await registry.restore()
    return Core(kv, catalog, store, engine, allocator, synthesizer, registry, control, dispatcher)


class TabJarServer:
    def __init__(self, settings: ServerSettings) -> None:
        self.settings = settings
        self.core: Optional[Core] = None
        self.control_server: Optional[ControlServer] = None
        self.master: Optional[DumpMaster] = None
        self._master_task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self.in_progress = False

    async def start(self) -> None:
        s = self.settings
        kv: KeyValueStore = JsonFileKeyValueStore(s.state_file) if s.state_file else MemoryKeyValueStore()
        self.core = await build_core(kv, s.isolation)

        self.control_server = ControlServer(self.core.dispatcher.handle_message, s.control_host, s.control_port)
        await self.control_server.start()

        opts = options.Options(listen_host=s.host, listen_port=s.port)
        self.master = DumpMaster(opts, with_termlog=False, with_dumper=False)
        self.master.addons.add(
            TabJarAddOn(self.core.dispatcher, self.core.registry, self.core.engine, s.isolation)
        )
        self._master_task = asyncio.create_task(self.master.run(), name="Proxy")
        self._master_task.add_done_callback(self._on_master_done)
        logger.info(
            "tabjar proxy on %s:%d (state: %s)", s.host, s.port, s.state_file or "in-memory"
        )

    def _on_master_done(self, task: asyncio.Task) -> None:
        try:
            task.result()
        except asyncio.CancelledError:
            logger.debug("Proxy task cancelled")
        except Exception:
            logger.error("Proxy stopped with an error: %s", traceback.format_exc())
        self.terminated()

    def terminated(self) -> None:
        if self.in_progress:
            return
        self.in_progress = True
        logger.info("Shutting down...")
        self._stop.set()

    async def graceful_shutdown(self) -> None:
        if self.master is not None:
            self.master.shutdown()
        if self._master_task is not None:
            try:
                await asyncio.wait_for(self._master_task, timeout=10)
            except asyncio.TimeoutError:
                logger.warning("Proxy did not stop in time, cancelling")
                self._master_task.cancel()
                await asyncio.gather(self._master_task, return_exceptions=True)
            except Exception:
                # Already reported by _on_master_done
                pass
        if self.control_server is not None:
            await self.control_server.stop()
        logger.info("Shutdown complete.")

    async def serve(self) -> None:
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGTERM, self.terminated)
        loop.add_signal_handler(signal.SIGINT, self.terminated)
        try:
            await self.start()
            await self._stop.wait()
        finally:
            await self.graceful_shutdown()


def main(argv: Optional[Sequence[str]] = None) -> int:
    settings = load_settings(argv)
    setup_logging(settings.log_level)
    server = TabJarServer(settings)
    try:
        if settings.use_uvloop:
            uvloop.run(server.serve())
        else:
            asyncio.run(server.serve())
    except Exception:
        logger.critical("Failed to run: %s", traceback.format_exc())
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
