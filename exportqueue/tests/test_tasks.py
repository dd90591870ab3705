# exportqueue/tests/test_tasks.py

from unittest.mock import patch

import pytest

from exportqueue.exports import tasks
from exportqueue.exports.models import ExportStatus
from exportqueue.exports.runner import ExportRunner


@pytest.fixture
def patched_tasks(session_factory, file_store, registry, clock):
    """Point the tasks at the test database and the in-memory sources"""

    def runner_for(db):
        return ExportRunner(db, file_store, registry=registry, page_size=2, clock=clock)

    with patch.object(tasks, "SessionLocal", session_factory), patch.object(
        tasks, "_runner", runner_for
    ):
        yield


class TestAdvancePendingExports:

    def test_advances_all_runnable_jobs(self, patched_tasks, export_service, people_ref):
        export_service.create_job(people_ref, owner_id="alice")
        export_service.create_job(people_ref, owner_id="bob")

        result = tasks.advance_pending_exports()
        assert result == {"processed": 2, "finished": 0, "rejected": 0, "skipped": 0}

        tasks.advance_pending_exports()
        result = tasks.advance_pending_exports()
        assert result["finished"] == 2

    def test_nothing_to_do(self, patched_tasks):
        assert tasks.advance_pending_exports() == {
            "processed": 0, "finished": 0, "rejected": 0, "skipped": 0
        }

    def test_failure_is_reported_not_raised(self, session_factory):
        def broken_runner(db):
            raise RuntimeError("storage unavailable")

        with patch.object(tasks, "SessionLocal", session_factory), patch.object(
            tasks, "_runner", broken_runner
        ):
            result = tasks.advance_pending_exports()

        assert result["status"] == "error"
        assert "storage unavailable" in result["message"]


class TestAdvanceExport:

    def test_single_tick(self, patched_tasks, export_service, people_ref):
        signature = export_service.create_job(people_ref, owner_id="alice")

        result = tasks.advance_export(signature)
        assert result == {
            "status": ExportStatus.PROCESSING.value,
            "signature": signature,
            "steps_processed": 2,
            "total_steps": 5,
        }

    def test_unknown_job(self, patched_tasks):
        result = tasks.advance_export("9" * 40)
        assert result["status"] == "error"
