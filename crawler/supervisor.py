"""Worker pool supervisor.

Starts one rendering worker and ``N - 1`` fetch workers as child processes,
restarts any that exit while the pool is running and logs every lifecycle
event. Before the pool starts, jobs left in ``processing`` by an unclean
shutdown are put back to ``pending``.
"""

from __future__ import annotations

import asyncio
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import structlog

from mongo import CrawlStore
from settings import Settings, get_settings

from .worker import FETCH, RENDER

logger = structlog.get_logger(__name__)

BASE_DIR = Path(__file__).resolve().parents[1]


@dataclass(frozen=True)
class WorkerSpec:
    kind: str
    index: int

    @property
    def name(self) -> str:
        return f"{self.kind}-{self.index}"

    def command(self) -> list[str]:
        return [
            sys.executable,
            "-m",
            "crawler.cli",
            "worker",
            "--kind",
            self.kind,
            "--index",
            str(self.index),
        ]


def plan_workers(total: int) -> list[WorkerSpec]:
    """Return one rendering worker plus at least one fetch worker."""

    fetch_count = max(1, total - 1)
    return [WorkerSpec(RENDER, 0)] + [WorkerSpec(FETCH, idx) for idx in range(fetch_count)]


def spawn_worker(spec: WorkerSpec) -> subprocess.Popen:
    env = os.environ.copy()
    python_paths = [str(BASE_DIR)]
    existing_py_path = env.get("PYTHONPATH")
    if existing_py_path:
        python_paths.append(existing_py_path)
    env["PYTHONPATH"] = os.pathsep.join(python_paths)
    return subprocess.Popen(spec.command(), cwd=str(BASE_DIR), env=env)


async def prepare_queue(store: CrawlStore, log: Any | None = None) -> int:
    """Create indexes and requeue stuck jobs. Returns the requeued count."""

    log = log or logger
    await store.ensure_indexes()
    requeued = await store.requeue_stuck_jobs()
    if requeued:
        log.info("stuck_jobs_requeued", count=requeued)
    return requeued


class Supervisor:
    """Keep the worker pool alive until :meth:`request_stop` is called."""

    def __init__(
        self,
        specs: list[WorkerSpec],
        *,
        restart_delay: float = 5.0,
        spawn: Callable[[WorkerSpec], Any] = spawn_worker,
        stop_timeout: float = 15.0,
        log: Any | None = None,
    ) -> None:
        self.specs = list(specs)
        self.restart_delay = restart_delay
        self.stop_timeout = stop_timeout
        self._spawn = spawn
        self.log = log or logger
        self.processes: dict[WorkerSpec, Any] = {}
        self._restart_at: dict[WorkerSpec, float] = {}
        self.restarts: dict[WorkerSpec, int] = {spec: 0 for spec in self.specs}
        self._stopping = False

    @property
    def stopping(self) -> bool:
        return self._stopping

    def request_stop(self, *_args: Any) -> None:
        if not self._stopping:
            self.log.info("supervisor_stop_requested")
        self._stopping = True

    def _start(self, spec: WorkerSpec) -> None:
        proc = self._spawn(spec)
        self.processes[spec] = proc
        self.log.info("worker_spawned", worker=spec.name, pid=getattr(proc, "pid", None))

    def start(self) -> None:
        self.log.info("supervisor_starting", workers=[spec.name for spec in self.specs])
        for spec in self.specs:
            self._start(spec)

    def poll_once(self, now: float | None = None) -> None:
        """Check every worker once, scheduling and performing restarts."""

        now = time.monotonic() if now is None else now
        for spec in self.specs:
            proc = self.processes.get(spec)
            if proc is not None:
                code = proc.poll()
                if code is None:
                    continue
                if code == 0:
                    self.log.info("worker_exited", worker=spec.name, code=code)
                else:
                    self.log.warning("worker_exited", worker=spec.name, code=code)
                self.processes[spec] = None
                self._restart_at[spec] = now + self.restart_delay
            if self._stopping:
                continue
            due = self._restart_at.get(spec)
            if due is not None and now >= due:
                del self._restart_at[spec]
                self.restarts[spec] += 1
                self.log.info("worker_restarting", worker=spec.name, restarts=self.restarts[spec])
                self._start(spec)

    def stop(self) -> None:
        """Terminate children and wait for them, killing stragglers."""

        self._stopping = True
        running = [(spec, proc) for spec, proc in self.processes.items() if proc is not None]
        for spec, proc in running:
            if proc.poll() is None:
                proc.terminate()
        deadline = time.monotonic() + self.stop_timeout
        for spec, proc in running:
            remaining = max(0.0, deadline - time.monotonic())
            try:
                code = proc.wait(timeout=remaining)
            except subprocess.TimeoutExpired:
                self.log.warning("worker_kill", worker=spec.name)
                proc.kill()
                code = proc.wait()
            self.log.info("worker_stopped", worker=spec.name, code=code)
        self.processes.clear()

    def run(self, poll_interval: float = 1.0) -> None:
        self.start()
        try:
            while not self._stopping:
                self.poll_once()
                time.sleep(poll_interval)
        finally:
            self.stop()
            self.log.info("supervisor_stopped")


def run_pool(settings: Settings | None = None) -> None:
    """Requeue stuck jobs, then supervise the worker pool until signalled."""

    settings = settings or get_settings()
    cfg = settings.crawler

    async def _prepare() -> None:
        store = CrawlStore.connect(settings.mongo)
        try:
            await prepare_queue(store)
        finally:
            await store.close()

    asyncio.run(_prepare())

    total = cfg.workers or os.cpu_count() or 2
    supervisor = Supervisor(plan_workers(total), restart_delay=cfg.restart_delay)
    signal.signal(signal.SIGINT, supervisor.request_stop)
    signal.signal(signal.SIGTERM, supervisor.request_stop)
    supervisor.run()
