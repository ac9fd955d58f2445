"""Accept build/flash submissions from a Redis stream.

Entries carry ``kind`` (``build`` or ``flash``) and ``payload`` (JSON of the
same body the HTTP endpoints take). Each accepted job is mirrored into the
hash ``imgforge:jobs:<id>`` so producers can follow it without the HTTP API.
"""
import asyncio
import logging
import os
from typing import Dict, Optional, Set, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from .models import BuildConfig, FlashRequest, JobInfo, JobKind
from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)

REDIS_URL = os.environ.get("REDIS_URL", "")
STREAM_NAME = os.environ.get("REDIS_STREAM_NAME", "imgforge:submissions")
STREAM_BLOCK_MS = int(os.environ.get("REDIS_STREAM_BLOCK_MS", "5000"))
STREAM_COUNT = int(os.environ.get("REDIS_STREAM_COUNT", "1"))
STREAM_START = os.environ.get("REDIS_STREAM_START", "$")

STREAM_GROUP = os.environ.get("REDIS_STREAM_GROUP")
STREAM_CONSUMER = os.environ.get("REDIS_STREAM_CONSUMER", "imgforge-1")

JOB_KEY_PREFIX = "imgforge:jobs:"


class InvalidSubmission(ValueError):
    pass


def _redis_client(url: str) -> redis.Redis:
    return redis.from_url(url, decode_responses=False)


def _text(value) -> str:
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _decode_fields(fields) -> Dict[str, str]:
    return {_text(k): _text(v) for k, v in fields.items()}


def parse_submission(fields: Dict[str, str]):
    kind = fields.get("kind", "").strip().lower()
    payload = fields.get("payload")
    if not payload:
        raise InvalidSubmission("entry missing payload field")
    try:
        if kind == JobKind.build.value:
            return JobKind.build, BuildConfig.model_validate_json(payload)
        if kind == JobKind.flash.value:
            return JobKind.flash, FlashRequest.model_validate_json(payload)
    except ValidationError as exc:
        raise InvalidSubmission(f"invalid {kind} payload: {exc}") from exc
    raise InvalidSubmission(f"unknown kind {kind!r}")


async def _mirror_status(rdb: redis.Redis, job: JobInfo) -> None:
    mapping = {"status": job.status.value, "kind": job.kind.value, "created_at": job.created_at}
    if job.error:
        mapping["error"] = job.error
    try:
        await rdb.hset(f"{JOB_KEY_PREFIX}{job.id}", mapping=mapping)
    except redis.RedisError:
        # the job itself is unaffected; the next mirror overwrites the hash
        logger.exception("Could not mirror job %s (%s) to redis", job.id, job.status.value)


async def process_entry(rdb: redis.Redis, orchestrator: Orchestrator, fields: Dict[str, str]) -> Optional[JobInfo]:
    try:
        kind, body = parse_submission(fields)
    except InvalidSubmission as exc:
        logger.warning("Dropping stream entry: %s", exc)
        return None

    if kind is JobKind.build:
        job = await orchestrator.submit_build(body)
    else:
        job = await orchestrator.submit_flash(body)
    await _mirror_status(rdb, job)

    job = await orchestrator.wait(job.id)
    await _mirror_status(rdb, job)
    return job


async def _handle_entry(rdb: redis.Redis, orchestrator: Orchestrator, entry_id: str, fields: Dict[str, str]) -> None:
    try:
        await process_entry(rdb, orchestrator, fields)
        if STREAM_GROUP:
            await rdb.xack(STREAM_NAME, STREAM_GROUP, entry_id)
    except Exception:
        logger.exception("Stream entry %s failed", entry_id)


async def _read_stream(rdb: redis.Redis, last_id: str) -> Tuple[str, Optional[str], Optional[Dict[str, str]]]:
    if STREAM_GROUP:
        try:
            await rdb.xgroup_create(STREAM_NAME, STREAM_GROUP, id="0-0", mkstream=True)
        except redis.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise
        response = await rdb.xreadgroup(
            STREAM_GROUP,
            STREAM_CONSUMER,
            {STREAM_NAME: ">"},
            count=STREAM_COUNT,
            block=STREAM_BLOCK_MS,
        )
    else:
        response = await rdb.xread({STREAM_NAME: last_id}, count=STREAM_COUNT, block=STREAM_BLOCK_MS)

    if not response:
        return last_id, None, None

    _, entries = response[0]
    if not entries:
        return last_id, None, None

    entry_id, fields = entries[0]
    entry_id = _text(entry_id)
    return entry_id, entry_id, _decode_fields(fields)


async def consume_forever(orchestrator: Orchestrator, url: str = REDIS_URL) -> None:
    rdb = _redis_client(url)
    last_id = STREAM_START
    handlers: Set[asyncio.Task] = set()
    logger.info("Listening on redis stream %s", STREAM_NAME)
    try:
        while True:
            try:
                last_id, entry_id, fields = await _read_stream(rdb, last_id)
            except redis.ConnectionError:
                logger.exception("Lost connection to redis, retrying")
                await asyncio.sleep(1.0)
                continue
            if not fields:
                continue
            # jobs run side by side; each handler waits on its own job
            task = asyncio.create_task(_handle_entry(rdb, orchestrator, entry_id, fields))
            handlers.add(task)
            task.add_done_callback(handlers.discard)
    finally:
        pending = list(handlers)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        await rdb.aclose()
