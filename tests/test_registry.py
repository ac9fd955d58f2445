import threading

import pytest

from imgforge.errors import InvalidTransitionError, JobNotFoundError
from imgforge.models import JobKind, JobStatus
from imgforge.registry import JobRegistry


def test_create_registers_running_job():
    reg = JobRegistry()
    job = reg.create(JobKind.build)
    assert job.status == JobStatus.running
    assert job.created_at
    fetched = reg.get(job.id)
    assert fetched.status == JobStatus.running
    assert fetched.kind == JobKind.build


def test_get_unknown_raises():
    with pytest.raises(JobNotFoundError):
        JobRegistry().get("nope")


def test_transition_once():
    reg = JobRegistry()
    job = reg.create(JobKind.flash)
    done = reg.transition(job.id, JobStatus.success)
    assert done.status == JobStatus.success
    assert done.finished_at is not None

    with pytest.raises(InvalidTransitionError):
        reg.transition(job.id, JobStatus.failed, error="late")
    assert reg.get(job.id).status == JobStatus.success
    assert reg.get(job.id).error is None


def test_transition_back_to_running_rejected():
    reg = JobRegistry()
    job = reg.create(JobKind.build)
    with pytest.raises(InvalidTransitionError):
        reg.transition(job.id, JobStatus.running)


def test_transition_unknown_job():
    with pytest.raises(JobNotFoundError):
        JobRegistry().transition("missing", JobStatus.failed)


def test_returned_jobs_are_snapshots():
    reg = JobRegistry()
    job = reg.create(JobKind.build)
    snapshot = reg.list()
    reg.transition(job.id, JobStatus.cancelled)
    assert snapshot[0].status == JobStatus.running
    assert job.status == JobStatus.running
    assert reg.get(job.id).status == JobStatus.cancelled


def test_concurrent_creates_and_racing_transitions():
    reg = JobRegistry()
    ids = []
    ids_lock = threading.Lock()

    def create_many():
        for _ in range(200):
            job = reg.create(JobKind.build)
            with ids_lock:
                ids.append(job.id)

    threads = [threading.Thread(target=create_many) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(ids) == len(set(ids)) == 800
    assert len(reg.list()) == 800

    target = ids[0]
    wins = []

    def finish(status):
        try:
            reg.transition(target, status)
            wins.append(status)
        except InvalidTransitionError:
            pass

    racers = [threading.Thread(target=finish, args=(s,)) for s in (JobStatus.success, JobStatus.failed) * 4]
    for t in racers:
        t.start()
    for t in racers:
        t.join()
    assert len(wins) == 1
    assert reg.get(target).status == wins[0]
