from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from .errors import PoolExhausted, PoolInitializationFailure, PoolShuttingDown
from .renderer import RendererLauncher, RendererProcess, RendererSession

LOGGER = logging.getLogger("datagen.pool")


@dataclass
class WorkerRecord:
    worker_id: int
    process: RendererProcess
    recycle_threshold: int
    leases: int = 0


@dataclass(frozen=True)
class PoolStats:
    total: int
    available: int
    busy: int
    spawned: int
    recycled: int


class WorkerPool:
    """Fixed-size set of renderer processes, one lendable session each.

    Every pool operation mutates bookkeeping under one condition variable;
    process launches, resets and teardowns run outside it so a slow renderer
    never blocks other acquires. A session stays in the busy set until its
    release has fully completed, which keeps ``shutdown`` honest about
    in-flight work.
    """

    def __init__(self, launcher: RendererLauncher, pool_size: int, recycle_threshold: int = 50):
        if pool_size < 1:
            raise ValueError("pool_size must be at least 1")
        if recycle_threshold < 1:
            raise ValueError("recycle_threshold must be at least 1")
        self._launcher = launcher
        self._pool_size = pool_size
        self._recycle_threshold = recycle_threshold
        self._cond = threading.Condition()
        self._workers: list[WorkerRecord] = []
        self._available: list[RendererSession] = []
        self._busy: dict[int, RendererSession] = {}
        self._owners: dict[int, WorkerRecord] = {}
        self._next_worker_id = 0
        self._spawned = 0
        self._recycled = 0
        self._shutting_down = False
        self._closed = False

    @property
    def pool_size(self) -> int:
        return self._pool_size

    @property
    def recycle_threshold(self) -> int:
        return self._recycle_threshold

    def initialize(self) -> None:
        LOGGER.info("Initializing worker pool with %d renderer processes", self._pool_size)
        started: list[tuple[WorkerRecord, RendererSession]] = []
        try:
            for _ in range(self._pool_size):
                started.append(self._spawn_worker())
        except Exception as exc:
            for record, session in started:
                self._close_session(session)
                self._terminate(record)
            raise PoolInitializationFailure(
                f"spawned {len(started)} of {self._pool_size} renderer processes: {exc}"
            ) from exc

        with self._cond:
            for record, session in started:
                self._workers.append(record)
                self._owners[id(session)] = record
                self._available.append(session)
            self._cond.notify_all()
        LOGGER.info("Worker pool ready with %d sessions", len(started))

    def acquire(self, timeout: float | None = None) -> RendererSession:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    raise PoolShuttingDown("worker pool is shutting down")
                if self._available:
                    session = self._available.pop()
                    self._busy[id(session)] = session
                    return session
                if not self._workers:
                    raise PoolExhausted("worker pool has no live renderer processes")
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise PoolExhausted(f"no session became available within {timeout:.1f}s")
                self._cond.wait(remaining)

    def release(self, session: RendererSession) -> None:
        with self._cond:
            if self._closed:
                self._busy.pop(id(session), None)
                return
            if id(session) not in self._busy:
                raise ValueError("session is not leased from this pool")
            record = self._owners[id(session)]
            record.leases += 1
            recycle = record.leases >= record.recycle_threshold

        if recycle:
            replacement = self._recycle(record, session)
        else:
            replacement = self._reset(record, session)

        with self._cond:
            self._busy.pop(id(session), None)
            self._owners.pop(id(session), None)
            if replacement is not None:
                new_record, new_session = replacement
                if self._closed:
                    # Shutdown force-terminated everything while we were busy.
                    self._close_session(new_session)
                    self._terminate(new_record)
                else:
                    self._owners[id(new_session)] = new_record
                    self._available.append(new_session)
            self._cond.notify_all()

    @contextmanager
    def lease(self, timeout: float | None = None) -> Iterator[RendererSession]:
        session = self.acquire(timeout)
        try:
            yield session
        finally:
            self.release(session)

    def shutdown(self, timeout: float = 30.0) -> None:
        with self._cond:
            if self._closed:
                return
            self._shutting_down = True
            self._cond.notify_all()
            LOGGER.info("Shutting down worker pool")

            deadline = time.monotonic() + timeout
            while self._busy:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    LOGGER.warning(
                        "%d sessions still leased after %.1fs, terminating anyway", len(self._busy), timeout
                    )
                    break
                self._cond.wait(remaining)

            workers = list(self._workers)
            self._workers.clear()
            self._available.clear()
            self._owners.clear()
            self._busy.clear()
            self._closed = True

        for record in workers:
            self._terminate(record)
        LOGGER.info("Worker pool shutdown complete")

    def stats(self) -> PoolStats:
        with self._cond:
            return PoolStats(
                total=len(self._workers),
                available=len(self._available),
                busy=len(self._busy),
                spawned=self._spawned,
                recycled=self._recycled,
            )

    def _spawn_worker(self) -> tuple[WorkerRecord, RendererSession]:
        process = self._launcher()
        try:
            session = process.open_session()
        except Exception:
            self._terminate_process(process)
            raise
        with self._cond:
            worker_id = self._next_worker_id
            self._next_worker_id += 1
            self._spawned += 1
        record = WorkerRecord(worker_id=worker_id, process=process, recycle_threshold=self._recycle_threshold)
        return record, session

    def _recycle(
        self, record: WorkerRecord, session: RendererSession
    ) -> tuple[WorkerRecord, RendererSession] | None:
        LOGGER.info("Worker %d reached %d leases, recycling", record.worker_id, record.leases)
        with self._cond:
            self._recycled += 1
        return self._replace_worker(record, session)

    def _reset(
        self, record: WorkerRecord, session: RendererSession
    ) -> tuple[WorkerRecord, RendererSession] | None:
        try:
            session.clear()
            return record, session
        except Exception as exc:
            LOGGER.warning("Failed to reset session on worker %d (%s), opening a new one", record.worker_id, exc)
        self._close_session(session)
        try:
            return record, record.process.open_session()
        except Exception as exc:
            LOGGER.warning("Worker %d cannot open a session (%s), replacing process", record.worker_id, exc)
        return self._replace_worker(record, None)

    def _replace_worker(
        self, record: WorkerRecord, session: RendererSession | None
    ) -> tuple[WorkerRecord, RendererSession] | None:
        if session is not None:
            self._close_session(session)
        self._terminate(record)

        with self._cond:
            shutting_down = self._shutting_down
        if shutting_down:
            self._drop_worker(record)
            return None

        try:
            new_record, new_session = self._spawn_worker()
        except Exception:
            LOGGER.exception("Failed to respawn worker %d, pool shrinks", record.worker_id)
            self._drop_worker(record)
            return None

        with self._cond:
            stopping = self._shutting_down or self._closed
            if not stopping:
                try:
                    self._workers[self._workers.index(record)] = new_record
                except ValueError:
                    self._workers.append(new_record)
        if stopping:
            # Shutdown began while the replacement was starting.
            self._close_session(new_session)
            self._terminate(new_record)
            self._drop_worker(record)
            return None
        return new_record, new_session

    def _drop_worker(self, record: WorkerRecord) -> None:
        with self._cond:
            if record in self._workers:
                self._workers.remove(record)
            self._cond.notify_all()

    def _close_session(self, session: RendererSession) -> None:
        try:
            session.close()
        except Exception as exc:
            LOGGER.debug("Ignoring error while closing session: %s", exc)

    def _terminate(self, record: WorkerRecord) -> None:
        self._terminate_process(record.process)

    def _terminate_process(self, process: RendererProcess) -> None:
        try:
            process.terminate()
        except Exception as exc:
            LOGGER.warning("Error while terminating renderer process: %s", exc)
