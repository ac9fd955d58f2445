"""Websocket relay of a job's captured log lines."""
from __future__ import annotations

import logging

from fastapi import WebSocket, status
from starlette.websockets import WebSocketDisconnect

from .errors import LogNotFoundError
from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)


async def stream_job_log(websocket: WebSocket, orchestrator: Orchestrator, job_id: str, follow: bool = False) -> int:
    """Replay the job's log to ``websocket`` one message per line, then close.

    With ``follow`` the channel stays open while the job is still running and
    new lines are pushed as they are appended. Returns the number of lines sent.
    """
    try:
        reader = orchestrator.sink.open_reader(
            job_id,
            follow=follow,
            is_active=lambda: orchestrator.registry.is_running(job_id),
        )
    except LogNotFoundError:
        logger.info("Refusing log stream for %s: no log", job_id)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return 0

    await websocket.accept()
    logger.info("WebSocket connected for job: %s", job_id)
    sent = 0
    try:
        async with reader:
            async for line in reader:
                await websocket.send_text(line)
                sent += 1
        await websocket.close()
    except (WebSocketDisconnect, RuntimeError, ConnectionError):
        # client went away; nothing else depends on this session
        logger.debug("Log stream for %s ended early after %d lines", job_id, sent)
    return sent
