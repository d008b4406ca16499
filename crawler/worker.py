"""Long-running worker: claim jobs, process them, back off when idle."""

from __future__ import annotations

import asyncio
import signal
from contextlib import suppress
from typing import Any

import structlog

from mongo import CrawlStore
from observability.logging import bind_worker_logger, configure_logging
from settings import Settings, get_settings

from .fetching import NullRenderer, PlaywrightRenderer, Renderer, build_http_client
from .processor import JobProcessor, SourcePruner

FETCH = "fetch"
RENDER = "render"
WORKER_KINDS = (FETCH, RENDER)


class WorkerLoop:
    """Claim up to ``concurrency`` jobs per round and process them.

    The atomic claim in the store is the only coordination between slots and
    between workers. A round ends when all of its slots are finished, so a
    stop request never abandons a claimed job half-way.
    """

    def __init__(
        self,
        store: CrawlStore,
        processor: JobProcessor,
        *,
        rendering: bool,
        concurrency: int = 5,
        delay: float = 1.0,
        sleep: float = 5.0,
        log: Any | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self.store = store
        self.processor = processor
        self.rendering = rendering
        self.concurrency = max(1, concurrency)
        self.delay = delay
        self.sleep = sleep
        self.log = log or structlog.get_logger(__name__)
        self.stop_event = stop_event or asyncio.Event()

    def stop(self) -> None:
        self.stop_event.set()

    async def _claim_and_process(self) -> bool:
        job = await self.store.claim_one_pending(rendering=self.rendering)
        if job is None:
            return False
        await self.processor.process(job)
        return True

    async def run_round(self) -> int:
        """Run one batch of slots and return how many jobs were claimed.

        Slot failures (store errors) are re-raised after every slot has
        settled.
        """

        results = await asyncio.gather(
            *(self._claim_and_process() for _ in range(self.concurrency)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        claimed = sum(1 for result in results if result)
        self.log.debug("round_finished", claimed=claimed)
        return claimed

    async def _pause(self, seconds: float) -> None:
        if seconds <= 0 or self.stop_event.is_set():
            return
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)

    async def run(self, *, max_rounds: int | None = None) -> int:
        """Loop until :meth:`stop` is called (or ``max_rounds`` is reached)."""

        rounds = 0
        processed = 0
        self.log.info("worker_started", rendering=self.rendering, concurrency=self.concurrency)
        while not self.stop_event.is_set():
            processed += await self.run_round()
            rounds += 1
            if not await self.store.has_pending(rendering=self.rendering):
                self.log.info("queue_empty", sleep=self.sleep)
                await self._pause(self.sleep)
            if max_rounds is not None and rounds >= max_rounds:
                break
            await self._pause(self.delay)
        self.log.info("worker_stopped", rounds=rounds, processed=processed)
        return processed


async def _build_renderer(kind: str, timeout: float) -> Renderer:
    if kind == RENDER:
        return await PlaywrightRenderer.launch(timeout=timeout)
    return NullRenderer()


async def run_worker(kind: str, index: int = 0, settings: Settings | None = None) -> int:
    """Run one worker process until SIGINT/SIGTERM. Returns processed jobs."""

    if kind not in WORKER_KINDS:
        raise ValueError(f"unknown worker kind: {kind}")
    settings = settings or get_settings()
    cfg = settings.crawler
    log = bind_worker_logger(kind, index)

    store = CrawlStore.connect(settings.mongo)
    client = build_http_client(cfg.request_timeout)
    renderer: Renderer = NullRenderer()
    try:
        renderer = await _build_renderer(kind, cfg.render_timeout)
        processor = JobProcessor(
            store,
            client,
            renderer=renderer,
            max_retries=cfg.max_retries,
            pruner=SourcePruner(store, cfg.pruning, log=log),
            log=log,
        )
        loop = WorkerLoop(
            store,
            processor,
            rendering=renderer.available,
            concurrency=cfg.concurrency,
            delay=cfg.delay,
            sleep=cfg.sleep,
            log=log,
        )
        event_loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with suppress(NotImplementedError):
                event_loop.add_signal_handler(sig, loop.stop)
        return await loop.run()
    finally:
        await renderer.close()
        await client.aclose()
        await store.close()
        log.info("worker_resources_released")


def main(kind: str, index: int = 0) -> int:
    """Process entry point used by the supervisor's child processes."""

    settings = get_settings()
    configure_logging(settings.logging.level, settings.logging.file, settings.logging.error_file)
    log = bind_worker_logger(kind, index)
    try:
        asyncio.run(run_worker(kind, index, settings))
    except Exception as exc:
        log.exception("worker_crashed", error=str(exc))
        return 1
    return 0
