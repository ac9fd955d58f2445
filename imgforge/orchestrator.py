"""Runs build and flash jobs in the background and records their outcome.

Each submission registers a running job, returns it right away and hands the
actual work to an asyncio task. The task spawns the external command, tees
stdout/stderr into the job's log file and the service log, waits for the
exit and moves the job to its terminal status. Errors inside the task never
reach the submitter; they only show up in the log and as a failed job.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Coroutine, Dict, List, Mapping, Optional, Set

from . import runner, storage
from .errors import InternalError, InvalidTransitionError
from .logsink import LogSink
from .models import BuildConfig, BuildMode, FlashRequest, JobInfo, JobKind, JobStatus
from .registry import JobRegistry
from .render import format_env, mode_code, render_env

logger = logging.getLogger(__name__)

BUILD_SCRIPT = os.environ.get("IMGFORGE_BUILD_SCRIPT", str(storage.WORKDIR / "imgforge.sh"))
FLASH_TOOL = os.environ.get("IMGFORGE_FLASH_TOOL", "dd")
JOB_TIMEOUT_SEC = float(os.environ.get("IMGFORGE_JOB_TIMEOUT_SEC", "0"))
KILL_GRACE_SEC = float(os.environ.get("IMGFORGE_KILL_GRACE_SEC", "10"))

FLASH_BLOCK_SIZE = "4M"
OUTPUT_ARTIFACT = "custom.img"


class JobCancelled(Exception):
    """Raised inside a job task once a cancel was requested for it."""


def flash_args(image_path: str, device: str) -> List[str]:
    return [
        f"if={image_path}",
        f"of={device}",
        f"bs={FLASH_BLOCK_SIZE}",
        "status=progress",
        "conv=fsync",
    ]


def artifact_name(hostname: str, when: Optional[datetime] = None) -> str:
    when = when or datetime.now(timezone.utc)
    safe = re.sub(r"[^A-Za-z0-9._-]", "_", hostname) or "image"
    return f"{safe}_{when.strftime('%Y%m%d_%H%M%S')}.img"


def _consume_result(fut: asyncio.Future) -> None:
    # the awaiting side may already be gone after a cancel or timeout
    if not fut.cancelled():
        fut.exception()


class Orchestrator:
    def __init__(
        self,
        registry: Optional[JobRegistry] = None,
        sink: Optional[LogSink] = None,
        build_script: Optional[str] = None,
        workdir: Optional[Path] = None,
        flash_tool: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.registry = registry or JobRegistry()
        self.sink = sink or LogSink()
        self.build_script = build_script or BUILD_SCRIPT
        self.workdir = Path(workdir or storage.WORKDIR)
        self.flash_tool = flash_tool or FLASH_TOOL
        self.timeout = JOB_TIMEOUT_SEC if timeout is None else timeout
        self._tasks: Dict[str, asyncio.Task] = {}
        self._processes: Dict[str, runner.RunningProcess] = {}
        self._cancel_requested: Set[str] = set()
        # jobs whose process has exited and whose outcome is being recorded
        self._settling: Set[str] = set()

    # -- submission ---------------------------------------------------------

    async def submit_build(self, config: BuildConfig) -> JobInfo:
        job = self.registry.create(JobKind.build)
        logger.info("Starting build job %s for host %s", job.id, config.hostname)
        self._spawn(job, self._run_build(job.id, config))
        return job

    async def submit_flash(self, request: FlashRequest) -> JobInfo:
        job = self.registry.create(JobKind.flash)
        logger.info("Starting flash job %s: %s -> %s", job.id, request.image_path, request.device)
        self._spawn(job, self._run_flash(job.id, request))
        return job

    def _spawn(self, job: JobInfo, work: Coroutine[Any, Any, None]) -> None:
        # the log exists from submission on, so a live tail can attach at once
        try:
            self.sink.create(job.id)
        except OSError as exc:
            work.close()
            self._finish(job.id, JobStatus.failed, f"cannot open log: {exc}")
            raise InternalError(f"Cannot open log for job {job.id}: {exc}") from exc
        task = asyncio.create_task(self._supervise(job, work), name=f"imgforge-{job.kind.value}-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._tasks.pop(job_id, None))

    async def _supervise(self, job: JobInfo, work: Coroutine[Any, Any, None]) -> None:
        try:
            await work
        except JobCancelled:
            logger.info("%s job %s cancelled", job.kind.value.capitalize(), job.id)
            self._finish(job.id, JobStatus.cancelled, "cancelled by request")
        except asyncio.CancelledError:
            if job.id in self._cancel_requested:
                self._finish(job.id, JobStatus.cancelled, "cancelled by request")
                return
            self._finish(job.id, JobStatus.failed, "interrupted by shutdown")
            raise
        except Exception as exc:
            logger.exception("%s job %s failed", job.kind.value.capitalize(), job.id)
            self._finish(job.id, JobStatus.failed, str(exc))
        else:
            logger.info("%s job %s completed successfully", job.kind.value.capitalize(), job.id)
            self._finish(job.id, JobStatus.success)
        finally:
            self._cancel_requested.discard(job.id)
            self._settling.discard(job.id)
            self.sink.close(job.id)

    def _finish(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> None:
        try:
            self.registry.transition(job_id, status, error=error)
        except InvalidTransitionError as exc:
            logger.warning("Ignoring %s for job %s: %s", status.value, job_id, exc)

    # -- job bodies ---------------------------------------------------------

    async def _run_build(self, job_id: str, config: BuildConfig) -> None:
        compose_path = script_path = None
        if config.docker_compose_content is not None:
            compose_path = storage.write_text_atomic(storage.job_compose_path(job_id), config.docker_compose_content)
        if config.custom_script_content is not None:
            script_path = storage.write_text_atomic(
                storage.job_script_path(job_id), config.custom_script_content, mode=0o755
            )

        env = render_env(
            config,
            compose_path=str(compose_path) if compose_path else None,
            script_path=str(script_path) if script_path else None,
        )
        content = format_env(env)
        env_path = storage.write_text_atomic(storage.job_env_path(job_id), content)
        storage.write_text_atomic(storage.job_config_path(job_id), content)
        # shared slot, every submission overwrites it
        storage.write_text_atomic(storage.last_run_path(self.workdir), content)

        proc_env = dict(os.environ)
        proc_env.update(env)
        proc_env["MODE"] = mode_code(config.mode)
        proc_env["IMGFORGE_ENV_FILE"] = str(env_path)

        outcome = await self._execute(job_id, JobKind.build, self.build_script, [], cwd=self.workdir, env=proc_env)
        if not outcome.success:
            logger.error("Build job %s failed with %s", job_id, outcome.description)
            raise InternalError(f"{Path(self.build_script).name} failed with {outcome.description}")

        if config.mode is BuildMode.artifact:
            await asyncio.to_thread(self._store_artifact, job_id, config.hostname)

    async def _run_flash(self, job_id: str, request: FlashRequest) -> None:
        outcome = await self._execute(
            job_id, JobKind.flash, self.flash_tool, flash_args(request.image_path, request.device)
        )
        if not outcome.success:
            logger.error("Flash job %s failed with %s", job_id, outcome.description)
            raise InternalError(f"{Path(self.flash_tool).name} failed with {outcome.description}")

    def _store_artifact(self, job_id: str, hostname: str) -> Optional[Path]:
        source = self.workdir / OUTPUT_ARTIFACT
        if not source.exists():
            logger.warning("Build job %s produced no %s", job_id, source)
            return None
        dest = storage.images_dir() / artifact_name(hostname)
        shutil.move(str(source), str(dest))
        logger.info("Saved image to: %s", dest)
        return dest

    # -- process plumbing ---------------------------------------------------

    async def _execute(
        self,
        job_id: str,
        kind: JobKind,
        command: str,
        args: List[str],
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> runner.ExitOutcome:
        if job_id in self._cancel_requested:
            raise JobCancelled()
        proc = await runner.start(command, args, cwd=cwd, env=env)
        self._processes[job_id] = proc
        drain = asyncio.ensure_future(self._drain(job_id, kind, proc))
        drain.add_done_callback(_consume_result)
        try:
            outcome = await asyncio.wait_for(asyncio.shield(drain), timeout=self.timeout or None)
        except asyncio.TimeoutError:
            logger.error("%s job %s exceeded %gs, terminating", kind.value.capitalize(), job_id, self.timeout)
            await self._stop(proc, drain)
            raise InternalError(f"timed out after {self.timeout:g}s")
        except BaseException:
            proc.terminate()
            raise
        finally:
            self._processes.pop(job_id, None)

        if job_id in self._cancel_requested and not outcome.success:
            raise JobCancelled()
        self._settling.add(job_id)
        logger.info("%s job %s exited with %s", kind.value.capitalize(), job_id, outcome.description)
        return outcome

    async def _drain(self, job_id: str, kind: JobKind, proc: runner.RunningProcess) -> runner.ExitOutcome:
        # dd reports progress on stderr, so only build stderr is worth a warning
        stderr_level = logging.WARNING if kind is JobKind.build else logging.INFO
        _, _, outcome = await asyncio.gather(
            self._tee(job_id, kind, "stdout", proc.stdout_lines(), logging.INFO),
            self._tee(job_id, kind, "stderr", proc.stderr_lines(), stderr_level),
            proc.wait(),
        )
        return outcome

    async def _tee(self, job_id: str, kind: JobKind, stream: str, lines: AsyncIterator[str], level: int) -> None:
        async for line in lines:
            self.sink.append(job_id, line)
            logger.log(
                level,
                "[%s:%s:%s] %s",
                kind.value,
                job_id,
                stream,
                line,
                extra={"job_id": job_id, "stream": stream},
            )

    async def _stop(self, proc: runner.RunningProcess, drain: asyncio.Future) -> None:
        proc.terminate()
        try:
            await asyncio.wait_for(asyncio.shield(drain), timeout=KILL_GRACE_SEC)
        except asyncio.TimeoutError:
            proc.kill()
            await drain

    # -- control ------------------------------------------------------------

    def is_active(self, job_id: str) -> bool:
        return job_id in self._tasks

    async def cancel(self, job_id: str) -> JobInfo:
        job = self.registry.get(job_id)
        if job.status.terminal:
            raise InvalidTransitionError(f"Job {job_id} is already {job.status.value}")
        if job_id in self._settling:
            raise InvalidTransitionError(f"Job {job_id} has already exited")
        task = self._tasks.get(job_id)
        if task is None:
            self._finish(job_id, JobStatus.cancelled, "cancelled by request")
            return self.registry.get(job_id)

        self._cancel_requested.add(job_id)
        proc = self._processes.get(job_id)
        if proc is None:
            task.cancel()
        else:
            logger.info("Terminating pid %s for job %s", proc.pid, job_id)
            proc.terminate()
            done, _ = await asyncio.wait({task}, timeout=KILL_GRACE_SEC)
            if not done:
                proc.kill()
        await asyncio.wait({task})
        # a task cancelled before its first step never reached _supervise
        if self.registry.is_running(job_id):
            self._finish(job_id, JobStatus.cancelled, "cancelled by request")
            self.sink.close(job_id)
        self._cancel_requested.discard(job_id)
        return self.registry.get(job_id)

    async def wait(self, job_id: str) -> JobInfo:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task})
        return self.registry.get(job_id)

    async def shutdown(self) -> None:
        pending = dict(self._tasks)
        for task in pending.values():
            task.cancel()
        if pending:
            await asyncio.gather(*pending.values(), return_exceptions=True)
        for job_id in pending:
            if self.registry.is_running(job_id):
                self._finish(job_id, JobStatus.failed, "interrupted by shutdown")
                self.sink.close(job_id)
