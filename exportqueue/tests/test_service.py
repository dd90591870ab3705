import threading

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from exportqueue.core.db import Base
from exportqueue.exports.exceptions import (
    AlreadyConsumedError,
    ConcurrentUpdateError,
    ExportNotFoundError,
    ForbiddenError,
    InvalidConfigurationError,
    InvalidStateTransitionError,
    NotReadyError,
)
from exportqueue.exports.models import ExportAction, ExportJob, ExportStatus
from exportqueue.exports.runner import ExportRunner
from exportqueue.exports.services import CANCELLED_MESSAGE, ExportService
from exportqueue.exports.sources import SequenceListSource, SourceRegistry
from exportqueue.tests.conftest import make_people


def job_count(db):
    return db.execute(select(func.count()).select_from(ExportJob)).scalar_one()


def run_to_completion(runner, signature, max_ticks=20):
    for _ in range(max_ticks):
        job = runner.advance(signature)
        if job.is_terminal:
            return job
    raise AssertionError(f"export {signature} did not finish")


class TestCreateJob:

    def test_registers_queued_job(self, db_session, export_service, people_ref):
        signature = export_service.create_job(
            people_ref, columns={"name": "Name"}, owner_id="alice"
        )

        job = db_session.execute(
            select(ExportJob).where(ExportJob.signature == signature)
        ).scalar_one()
        assert len(signature) == 40
        assert job.status == ExportStatus.QUEUED
        assert job.total_steps == 5
        assert job.steps_processed == 0
        assert job.columns == [["name", "Name"]]
        assert [a.action for a in job.actions] == [ExportAction.REGISTER.value]

    def test_signatures_are_unique(self, export_service, people_ref):
        signatures = {export_service.create_job(people_ref, owner_id="alice") for _ in range(5)}
        assert len(signatures) == 5

    @pytest.mark.parametrize("separator", [";;", "", '"', "\n", "\r", 5, None])
    def test_invalid_separator_persists_nothing(self, db_session, export_service, people_ref, separator):
        with pytest.raises(InvalidConfigurationError):
            export_service.create_job(people_ref, separator=separator, owner_id="alice")
        assert job_count(db_session) == 0

    @pytest.mark.parametrize(
        "columns",
        [
            {},
            [],
            [("name",)],
            [("", "Empty")],
            {"name": 1},
            [("name", "A"), ("name", "B")],
            ["name"],
        ],
    )
    def test_invalid_columns(self, db_session, export_service, people_ref, columns):
        with pytest.raises(InvalidConfigurationError):
            export_service.create_job(people_ref, columns=columns, owner_id="alice")
        assert job_count(db_session) == 0

    def test_column_pairs_keep_their_order(self, export_service, db_session, people_ref):
        signature = export_service.create_job(
            people_ref, columns=[("email", "Mail"), ("id", "#")], owner_id="alice"
        )
        job = db_session.execute(
            select(ExportJob).where(ExportJob.signature == signature)
        ).scalar_one()
        assert job.columns == [["email", "Mail"], ["id", "#"]]

    @pytest.mark.parametrize(
        "list_ref",
        [{"source": ""}, {"source": "missing"}, {"filters": {}}, "people"],
    )
    def test_invalid_list_reference(self, db_session, export_service, list_ref):
        with pytest.raises(InvalidConfigurationError):
            export_service.create_job(list_ref, owner_id="alice")
        assert job_count(db_session) == 0

    def test_header_flag_must_be_boolean(self, export_service, people_ref):
        with pytest.raises(InvalidConfigurationError):
            export_service.create_job(people_ref, include_header="yes", owner_id="alice")

    def test_owner_is_required(self, export_service, people_ref):
        with pytest.raises(InvalidConfigurationError):
            export_service.create_job(people_ref, owner_id=None)

    def test_empty_list_finishes_immediately(self, export_service, file_store, people, people_ref):
        people.clear()
        signature = export_service.create_job(people_ref, owner_id="alice")

        view = export_service.get_status(signature, "alice")
        assert view.status == ExportStatus.FINISHED
        assert view.total_steps == 0
        assert view.has_file is True

        content, _ = export_service.download(signature, "alice")
        assert content == b""
        assert not file_store.exists(signature)


class TestGetStatus:

    def test_queued_job_has_no_estimate(self, export_service, people_ref):
        signature = export_service.create_job(people_ref, owner_id="alice")

        view = export_service.get_status(signature, "alice")
        assert view.id == signature
        assert view.status == ExportStatus.QUEUED
        assert view.elapsed_seconds is None
        assert view.remaining_seconds is None
        assert view.link == f"/api/exports/{signature}"
        assert view.download_link is None

    def test_estimate_extrapolates_from_rows_done(
        self, db_session, export_service, file_store, registry, clock, people_ref
    ):
        runner = ExportRunner(db_session, file_store, registry=registry, page_size=1, clock=clock)
        signature = export_service.create_job(people_ref, owner_id="alice")

        runner.advance(signature)
        view = export_service.get_status(signature, "alice")
        assert view.steps_processed == 1
        assert view.elapsed_seconds == 0
        assert view.remaining_seconds == 0

        clock.advance(12)
        runner.advance(signature)
        view = export_service.get_status(signature, "alice")
        assert view.steps_processed == 2
        assert view.elapsed_seconds == 12
        assert view.remaining_seconds == 18

    def test_remaining_unknown_before_first_row(self, db_session, export_service, people_ref):
        signature = export_service.create_job(people_ref, owner_id="alice")
        job = db_session.execute(
            select(ExportJob).where(ExportJob.signature == signature)
        ).scalar_one()
        job.mark_processing(job.created_at)
        db_session.commit()

        view = export_service.get_status(signature, "alice")
        assert view.status == ExportStatus.PROCESSING
        assert view.elapsed_seconds == 0
        assert view.remaining_seconds is None

    def test_finished_job_offers_download(self, export_service, runner, people_ref):
        signature = export_service.create_job(people_ref, owner_id="alice")
        run_to_completion(runner, signature)

        view = export_service.get_status(signature, "alice")
        assert view.status == ExportStatus.FINISHED
        assert view.has_file is True
        assert view.download_link == f"/api/exports/{signature}/download"
        assert view.error_message is None

    def test_rejected_job_reports_reason(self, export_service, people_ref):
        signature = export_service.create_job(people_ref, owner_id="alice")
        export_service.cancel(signature, "alice")

        view = export_service.get_status(signature, "alice")
        assert view.status == ExportStatus.REJECTED
        assert view.error_message == CANCELLED_MESSAGE
        assert view.has_file is False

    def test_unknown_signature(self, export_service):
        with pytest.raises(ExportNotFoundError):
            export_service.get_status("0" * 40, "alice")


class TestAccess:
    """Only the owner sees a job, whatever its status"""

    @pytest.mark.parametrize("requester", ["bob", None, ""])
    def test_other_identities_are_forbidden(self, export_service, runner, people_ref, requester):
        signature = export_service.create_job(people_ref, owner_id="alice")

        with pytest.raises(ForbiddenError):
            export_service.get_status(signature, requester)

        run_to_completion(runner, signature)
        with pytest.raises(ForbiddenError):
            export_service.get_status(signature, requester)
        with pytest.raises(ForbiddenError):
            export_service.download(signature, requester)
        with pytest.raises(ForbiddenError):
            export_service.cancel(signature, requester)

    def test_forbidden_download_leaves_file(self, export_service, runner, file_store, people_ref):
        signature = export_service.create_job(people_ref, owner_id="alice")
        run_to_completion(runner, signature)

        with pytest.raises(ForbiddenError):
            export_service.download(signature, "bob")
        assert file_store.exists(signature)


class TestDownload:

    def test_download_is_single_use(self, export_service, runner, file_store, people_ref):
        signature = export_service.create_job(
            people_ref, columns={"id": "ID", "name": "Name"}, owner_id="alice"
        )
        run_to_completion(runner, signature)

        content, filename = export_service.download(signature, "alice")
        assert content.startswith(b"ID,Name\r\n1,Person 1\r\n")
        assert content.count(b"\r\n") == 6
        assert filename == "export-19-10-2026-14-05.csv"
        assert not file_store.exists(signature)

        with pytest.raises(AlreadyConsumedError):
            export_service.download(signature, "alice")

    def test_download_is_recorded(self, db_session, export_service, runner, clock, people_ref):
        signature = export_service.create_job(people_ref, owner_id="alice")
        run_to_completion(runner, signature)
        clock.advance(90)

        export_service.download(signature, "alice")

        job = db_session.execute(
            select(ExportJob).where(ExportJob.signature == signature)
        ).scalar_one()
        assert job.downloaded_at == clock()
        assert job.actions[-1].action == ExportAction.DOWNLOADED.value
        assert job.status == ExportStatus.FINISHED

    def test_status_after_download(self, export_service, runner, people_ref):
        signature = export_service.create_job(people_ref, owner_id="alice")
        run_to_completion(runner, signature)
        export_service.download(signature, "alice")

        view = export_service.get_status(signature, "alice")
        assert view.status == ExportStatus.FINISHED
        assert view.has_file is False
        assert view.download_link is None
        assert "only be downloaded once" in view.error_message

    def test_unfinished_job_is_not_ready(self, export_service, runner, people_ref):
        signature = export_service.create_job(people_ref, owner_id="alice")

        with pytest.raises(NotReadyError) as exc:
            export_service.download(signature, "alice")
        assert exc.value.status == "QUEUED"

        runner.advance(signature)
        with pytest.raises(NotReadyError):
            export_service.download(signature, "alice")

    def test_rejected_job_is_not_ready(self, export_service, people_ref):
        signature = export_service.create_job(people_ref, owner_id="alice")
        export_service.cancel(signature, "alice")

        with pytest.raises(NotReadyError):
            export_service.download(signature, "alice")

    def test_concurrent_downloads_deliver_once(self, tmp_path, file_store, clock):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'downloads.db'}",
            connect_args={"check_same_thread": False},
        )
        Base.metadata.create_all(engine)
        factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        registry = SourceRegistry()
        people = make_people(3)
        registry.register("people")(lambda db, f, s: SequenceListSource(people))

        db = factory()
        try:
            service = ExportService(db, file_store, registry=registry, clock=clock)
            signature = service.create_job({"source": "people"}, owner_id="alice")
            run_to_completion(
                ExportRunner(db, file_store, registry=registry, page_size=10, clock=clock),
                signature,
            )
        finally:
            db.close()

        workers = 4
        barrier = threading.Barrier(workers)
        results = []
        lock = threading.Lock()

        def attempt():
            session = factory()
            try:
                barrier.wait()
                content, _ = ExportService(
                    session, file_store, registry=registry, clock=clock
                ).download(signature, "alice")
                outcome = ("ok", content)
            except AlreadyConsumedError:
                outcome = ("consumed", None)
            finally:
                session.close()
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=attempt) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        engine.dispose()
        assert len(results) == workers
        delivered = [content for outcome, content in results if outcome == "ok"]
        assert len(delivered) == 1
        assert delivered[0].count(b"\r\n") == 4


class TestCancel:

    def test_cancel_queued_job(self, export_service, people_ref):
        signature = export_service.create_job(people_ref, owner_id="alice")

        job = export_service.cancel(signature, "alice")
        assert job.status == ExportStatus.REJECTED
        assert job.error_message == CANCELLED_MESSAGE
        assert job.actions[-1].action == ExportAction.CANCELLED.value

    def test_cancel_processing_job_removes_partial_file(
        self, export_service, runner, file_store, people_ref
    ):
        signature = export_service.create_job(people_ref, owner_id="alice")
        runner.advance(signature)
        assert file_store.exists(signature)

        export_service.cancel(signature, "alice")
        assert not file_store.exists(signature)

    @pytest.mark.parametrize("finish", [True, False])
    def test_terminal_jobs_cannot_be_cancelled(self, export_service, runner, people_ref, finish):
        signature = export_service.create_job(people_ref, owner_id="alice")
        if finish:
            run_to_completion(runner, signature)
        else:
            export_service.cancel(signature, "alice")

        with pytest.raises(InvalidStateTransitionError):
            export_service.cancel(signature, "alice")

    @pytest.fixture
    def interleaved(self, file_session_factory, file_store, registry, clock, people_ref):
        """A service on one connection and a tick runner on another"""
        db = file_session_factory()
        other = file_session_factory()
        service = ExportService(db, file_store, registry=registry, clock=clock)

        def tick(signature, page_size):
            ExportRunner(other, file_store, registry=registry, page_size=page_size, clock=clock).advance(
                signature
            )

        try:
            yield service, tick, service.create_job(people_ref, owner_id="alice")
        finally:
            db.close()
            other.close()

    def test_cancel_retries_after_tick_commits_in_between(self, interleaved, file_store, monkeypatch):
        service, tick, signature = interleaved
        load = service._load

        def load_then_tick(sig, requester_id):
            job = load(sig, requester_id)
            tick(sig, 2)
            return job

        monkeypatch.setattr(service, "_load", load_then_tick)
        job = service.cancel(signature, "alice")

        assert job.status == ExportStatus.REJECTED
        assert job.steps_processed == 2
        assert job.error_message == CANCELLED_MESSAGE
        assert [a.action for a in job.actions].count(ExportAction.CANCELLED.value) == 1
        assert not file_store.exists(signature)

    def test_cancel_loses_to_tick_that_finished_the_job(self, interleaved, file_store, monkeypatch):
        service, tick, signature = interleaved
        load = service._load

        def load_then_finish(sig, requester_id):
            job = load(sig, requester_id)
            tick(sig, 10)
            return job

        monkeypatch.setattr(service, "_load", load_then_finish)
        with pytest.raises(InvalidStateTransitionError):
            service.cancel(signature, "alice")

        job = service.repo.get_by_signature(signature, refresh=True)
        assert job.status == ExportStatus.FINISHED
        assert file_store.exists(signature)

    def test_cancel_gives_up_when_job_keeps_changing(self, interleaved, file_store, monkeypatch):
        service, tick, signature = interleaved
        get_by_signature = service.repo.get_by_signature

        def fetch_then_tick(sig, refresh=False):
            job = get_by_signature(sig, refresh=refresh)
            tick(sig, 1)
            return job

        monkeypatch.setattr(service.repo, "get_by_signature", fetch_then_tick)
        with pytest.raises(ConcurrentUpdateError):
            service.cancel(signature, "alice")

        monkeypatch.undo()
        job = service.repo.get_by_signature(signature, refresh=True)
        assert job.status == ExportStatus.PROCESSING
        assert job.steps_processed == 2
        assert file_store.exists(signature)


class TestListJobs:

    def test_newest_first_for_owner_only(self, export_service, clock, people_ref):
        created = []
        for owner in ["alice", "bob", "alice", "alice"]:
            created.append(export_service.create_job(people_ref, owner_id=owner))
            clock.advance(60)

        jobs, total = export_service.list_jobs("alice", page=1, per_page=2)
        assert total == 3
        assert [j.signature for j in jobs] == [created[3], created[2]]

        jobs, total = export_service.list_jobs("alice", page=2, per_page=2)
        assert [j.signature for j in jobs] == [created[0]]

    def test_status_filter(self, export_service, people_ref):
        keep = export_service.create_job(people_ref, owner_id="alice")
        cancelled = export_service.create_job(people_ref, owner_id="alice")
        export_service.cancel(cancelled, "alice")

        jobs, total = export_service.list_jobs("alice", status=ExportStatus.QUEUED)
        assert total == 1
        assert jobs[0].signature == keep
