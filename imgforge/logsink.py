"""Append-only per-job log files with independent, replaying readers."""
from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Callable, Dict, Optional, TextIO

from . import storage
from .errors import LogNotFoundError

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.25


class LogReader:
    """Yields the job's lines from the start of the log.

    Without ``follow`` iteration stops at the current end of file. With
    ``follow`` it keeps polling for new lines while ``is_active()`` returns
    true, and stops once the job is done and everything has been read.
    """

    def __init__(
        self,
        path: Path,
        follow: bool = False,
        is_active: Optional[Callable[[], bool]] = None,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.path = path
        self.follow = follow
        self._is_active = is_active or (lambda: False)
        self._poll_interval = poll_interval
        self._fh = open(path, "r", encoding="utf-8", errors="replace", newline="\n")
        self._partial = ""

    def __aiter__(self) -> "LogReader":
        return self

    async def __anext__(self) -> str:
        while True:
            if self._fh is None:
                raise StopAsyncIteration
            line = self._read_line()
            if line is not None:
                return line
            # sample the job state before the final read so no tail is lost
            if not self.follow or not self._is_active():
                line = self._read_line()
                if line is not None:
                    return line
                self.close()
                raise StopAsyncIteration
            await asyncio.sleep(self._poll_interval)

    def _read_line(self) -> Optional[str]:
        chunk = self._fh.readline()
        if not chunk:
            return None
        if not chunk.endswith("\n"):
            # writer has not finished this line yet
            self._partial += chunk
            return None
        line = self._partial + chunk[:-1]
        self._partial = ""
        return line

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    async def __aenter__(self) -> "LogReader":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()


class LogSink:
    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._handles: Dict[str, TextIO] = {}
        self._locks_guard = threading.Lock()

    def path_for(self, job_id: str) -> Path:
        return storage.job_log_path(job_id)

    def _lock_for(self, job_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(job_id)
            if lock is None:
                lock = self._locks[job_id] = threading.Lock()
            return lock

    def _handle_for(self, job_id: str) -> TextIO:
        # caller holds the job's lock
        fh = self._handles.get(job_id)
        if fh is None:
            fh = self._handles[job_id] = open(self.path_for(job_id), "a", encoding="utf-8")
        return fh

    def create(self, job_id: str) -> Path:
        """Open the job's log so readers can attach before the first line."""
        with self._lock_for(job_id):
            self._handle_for(job_id)
        return self.path_for(job_id)

    def append(self, job_id: str, line: str) -> None:
        text = line.rstrip("\r\n").replace("\n", " ") + "\n"
        with self._lock_for(job_id):
            fh = self._handle_for(job_id)
            fh.write(text)
            fh.flush()

    def close(self, job_id: str) -> None:
        with self._lock_for(job_id):
            fh = self._handles.pop(job_id, None)
            if fh is not None:
                fh.close()

    def exists(self, job_id: str) -> bool:
        return self.path_for(job_id).is_file()

    def open_reader(
        self,
        job_id: str,
        follow: bool = False,
        is_active: Optional[Callable[[], bool]] = None,
    ) -> LogReader:
        try:
            return LogReader(self.path_for(job_id), follow=follow, is_active=is_active)
        except FileNotFoundError:
            raise LogNotFoundError(job_id) from None
