import os
import shutil

from fleet_backup.errors import FileSystemError
from fleet_backup.schemas import Kind


class TestRetentionManager:
    def test_only_runs_older_than_the_window_are_pruned(self, orchestrator, retention, clock, store):
        old = orchestrator.run_batch(["A"], Kind.SCHEDULED, configuration_id="1")
        clock.advance(days=2)
        recent = orchestrator.run_batch(["A"], Kind.SCHEDULED, configuration_id="1")
        clock.advance(days=29)

        report = retention.prune(30)

        assert report.deleted_runs == [old.id]
        assert report.errors == []
        assert old.id not in store.runs
        assert f"{old.id}.A" not in store.artifacts
        assert not os.path.exists(old.folder)
        assert recent.id in store.runs
        assert os.path.isdir(recent.folder)

    def test_pruning_twice_changes_nothing_the_second_time(self, orchestrator, retention, clock, store):
        orchestrator.run_batch(["A", "B"], Kind.MANUAL)
        clock.advance(days=31)
        retention.prune(30)
        runs_after_first = {r.id for r in store.runs.list()}

        report = retention.prune(30)

        assert report.deleted_runs == []
        assert report.deleted_artifacts == []
        assert {r.id for r in store.runs.list()} == runs_after_first

    def test_already_deleted_folder_counts_as_pruned(self, orchestrator, retention, clock, store):
        run = orchestrator.run_batch(["A"], Kind.MANUAL)
        shutil.rmtree(run.folder)
        clock.advance(days=31)

        report = retention.prune(30)

        assert report.deleted_runs == [run.id]
        assert run.id not in store.runs

    def test_deletion_error_keeps_the_record_and_moves_on(
        self, orchestrator, retention, clock, store, artifacts, monkeypatch
    ):
        stuck = orchestrator.run_batch(["A"], Kind.MANUAL)
        other = orchestrator.run_batch(["B"], Kind.MANUAL)
        clock.advance(days=31)
        real_remove = artifacts.remove_folder

        def remove_folder(folder):
            if folder == stuck.folder:
                raise FileSystemError(f"Cannot delete folder {folder}: permission denied")
            return real_remove(folder)

        monkeypatch.setattr(artifacts, "remove_folder", remove_folder)

        report = retention.prune(30)

        assert report.deleted_runs == [other.id]
        assert len(report.errors) == 1
        assert stuck.id in store.runs
        assert f"{stuck.id}.A" in store.artifacts

    def test_standalone_backups_are_pruned_by_age(self, orchestrator, retention, clock, store):
        artifact = orchestrator.backup_database("A")
        clock.advance(days=10)
        fresh = orchestrator.backup_database("B")
        clock.advance(days=25)

        report = retention.prune(30)

        assert report.deleted_artifacts == [artifact.id]
        assert not os.path.exists(artifact.path)
        assert fresh.id in store.artifacts

    def test_in_progress_runs_are_left_alone(self, orchestrator, retention, clock, store):
        run = orchestrator.start_batch(["A"], Kind.MANUAL)
        clock.advance(days=60)

        report = retention.prune(30)

        assert report.deleted_runs == []
        assert run.id in store.runs

    def test_configuration_scoped_prune_keeps_other_configurations(self, orchestrator, retention, clock, store):
        daily = orchestrator.run_batch(["A"], Kind.SCHEDULED, configuration_id="daily")
        billing = orchestrator.run_batch(["B"], Kind.SCHEDULED, configuration_id="billing")
        standalone = orchestrator.backup_database("A")
        clock.advance(days=8)

        report = retention.prune(7, configuration_id="billing")

        assert report.deleted_runs == [billing.id]
        assert report.deleted_artifacts == []
        assert daily.id in store.runs
        assert standalone.id in store.artifacts

    def test_configuration_run_only_prunes_its_own_history(self, orchestrator, clock, store):
        daily = orchestrator.run_batch(["A"], Kind.SCHEDULED, configuration_id="daily")
        old_billing = orchestrator.run_batch(["B"], Kind.SCHEDULED, configuration_id="billing")
        clock.advance(days=8)

        orchestrator.run_batch(["B"], Kind.SCHEDULED, configuration_id="billing", retention_days=7)

        assert old_billing.id not in store.runs
        assert daily.id in store.runs
