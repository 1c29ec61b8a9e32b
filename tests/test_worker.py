"""Archive worker batch processing."""

from datetime import datetime

from satchel.archive.jobs import claim_job
from satchel.metadata import ArchiveJob
from satchel.archive.orchestrator import build_worker_id
from satchel.worker import BatchResult, _to_bool, run_loop, run_worker_once


def test_batch_processes_queued_jobs(test_db, orchestrator, make_gallery, session_factory, archive_store):
    galleries = [make_gallery(25, title=f"Gallery {index}") for index in range(3)]
    for gallery in galleries:
        orchestrator.get_or_build(test_db, gallery.id)

    result = run_worker_once(max_jobs=2, orchestrator=orchestrator, session_factory=session_factory)

    assert result.as_dict() == {"released": 0, "processed": 2, "succeeded": 2, "failed": 0, "renotified": 0}
    assert len(archive_store.objects) == 2

    rest = run_worker_once(max_jobs=5, orchestrator=orchestrator, session_factory=session_factory)
    assert rest.processed == 1
    assert len(archive_store.objects) == 3


def test_batch_with_no_work_is_empty(orchestrator, session_factory):
    result = run_worker_once(orchestrator=orchestrator, session_factory=session_factory)

    assert result == BatchResult()


def test_batch_releases_overdue_jobs_first(test_db, orchestrator, make_gallery, session_factory):
    gallery = make_gallery(25)
    handle = orchestrator.get_or_build(test_db, gallery.id)
    claim_job(test_db, handle.job_id, worker_id="crashed", timeout_seconds=60)
    test_db.query(ArchiveJob).filter(ArchiveJob.id == handle.job_id).update(
        {ArchiveJob.deadline: datetime(2000, 1, 1)}, synchronize_session=False
    )
    test_db.commit()

    result = run_worker_once(orchestrator=orchestrator, session_factory=session_factory)

    assert result.released == 1
    assert result.succeeded == 1
    test_db.expire_all()
    job = test_db.get(ArchiveJob, handle.job_id)
    assert job.status == "completed"
    assert job.attempts == 2


def test_run_loop_once_builds_one_job(test_db, orchestrator, make_gallery, session_factory, archive_store):
    for index in range(2):
        orchestrator.get_or_build(test_db, make_gallery(25, title=f"G{index}").id)

    run_loop(once=True, poll_seconds=0.01, orchestrator=orchestrator, session_factory=session_factory)

    assert len(archive_store.objects) == 1


def test_to_bool():
    assert _to_bool("yes") is True
    assert _to_bool("0") is False
    assert _to_bool(None) is False
    assert _to_bool(True) is True


def test_worker_ids_are_unique_and_prefixed():
    first = build_worker_id()
    inline = build_worker_id("inline:")

    assert first != build_worker_id()
    assert inline.startswith("inline:")
    assert inline[len("inline:"):].count(":") == first.count(":") == 2
