"""Launch one external command and expose its output as async line streams."""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import re
import signal
from dataclasses import dataclass
from typing import AsyncIterator, Mapping, Optional, Sequence

from .errors import SpawnError

logger = logging.getLogger(__name__)

READ_CHUNK = 4096
# dd status=progress rewrites its line with bare carriage returns
_LINE_BREAK = re.compile(r"\r\n|\r|\n")


@dataclass(frozen=True)
class ExitOutcome:
    returncode: Optional[int]
    signal: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def description(self) -> str:
        if self.signal:
            return f"terminated by signal {self.signal}"
        return f"exit status {self.returncode}"

    @classmethod
    def from_returncode(cls, returncode: Optional[int]) -> "ExitOutcome":
        if returncode is not None and returncode < 0:
            try:
                name = signal.Signals(-returncode).name
            except ValueError:
                name = str(-returncode)
            return cls(returncode=returncode, signal=name)
        return cls(returncode=returncode)


async def iter_lines(stream: Optional[asyncio.StreamReader]) -> AsyncIterator[str]:
    if stream is None:
        return
    # multibyte characters may straddle two reads
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            break
        pending += decoder.decode(chunk)
        parts = _LINE_BREAK.split(pending)
        # a trailing "\r" may be the first half of "\r\n"
        if pending.endswith("\r"):
            parts = parts[:-1]
            pending = parts.pop() + "\r" if parts else "\r"
        else:
            pending = parts.pop()
        for line in parts:
            if line:
                yield line
    pending += decoder.decode(b"", final=True)
    for line in _LINE_BREAK.split(pending):
        if line:
            yield line


class RunningProcess:
    def __init__(self, proc: asyncio.subprocess.Process, argv: Sequence[str]):
        self._proc = proc
        self.argv = list(argv)
        self._stdout_taken = False
        self._stderr_taken = False

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    def stdout_lines(self) -> AsyncIterator[str]:
        if self._stdout_taken:
            raise RuntimeError("stdout already consumed")
        self._stdout_taken = True
        return iter_lines(self._proc.stdout)

    def stderr_lines(self) -> AsyncIterator[str]:
        if self._stderr_taken:
            raise RuntimeError("stderr already consumed")
        self._stderr_taken = True
        return iter_lines(self._proc.stderr)

    async def wait(self) -> ExitOutcome:
        return ExitOutcome.from_returncode(await self._proc.wait())

    def terminate(self) -> None:
        """SIGTERM the whole process group; the command may have forked helpers."""
        if self._proc.returncode is not None:
            return
        try:
            os.killpg(self._proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        except PermissionError:
            self._proc.terminate()

    def kill(self) -> None:
        if self._proc.returncode is not None:
            return
        try:
            os.killpg(self._proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            self._proc.kill()


async def start(
    command: str,
    args: Sequence[str] = (),
    cwd: Optional[os.PathLike] = None,
    env: Optional[Mapping[str, str]] = None,
) -> RunningProcess:
    argv = [str(command), *[str(a) for a in args]]
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd is not None else None,
            env=dict(env) if env is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
        raise SpawnError(f"Failed to spawn {command}: {exc}") from exc
    logger.info("Started %s (pid %s)", " ".join(argv), proc.pid)
    return RunningProcess(proc, argv)
