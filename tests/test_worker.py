"""Tests for the detached worker: status file, supervisor and entry point."""

import dataclasses
import json
import os
import subprocess
import time
from pathlib import Path

import pytest

from conftest import FakeRunner

from nas_backup_agent import __util__
from nas_backup_agent.core import pipeline as pipeline_module
from nas_backup_agent.core.capture import CaptureExecutor
from nas_backup_agent.core.models import Phase, ProgressReport
from nas_backup_agent.worker import (
    STATUS_VERSION,
    StatusWriter,
    WorkerHandle,
    WorkerStatusRecord,
    WorkerSupervisor,
    read_status,
    worker_error,
    write_status,
)
from nas_backup_agent.worker import supervisor as supervisor_module
from nas_backup_agent.worker.main import read_job_file, run_worker
from nas_backup_agent.worker.supervisor import (
    CREATE_BREAKAWAY_FROM_JOB,
    DETACHED_PROCESS,
    worker_command,
)


class FakeClock:
    """Monotonic clock advanced by the supervisor's sleep calls."""

    def __init__(self):
        self.now = 0.0
        self.ticks = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds
        for tick in self.ticks:
            tick(self.now)


class FakeProcess:
    def __init__(self, pid=4242):
        self.pid = pid
        self.polled = 0

    def poll(self):
        self.polled += 1
        return None


class FakePopen:
    def __init__(self):
        self.calls = []
        self.job_modes = []

    def __call__(self, command, **kwargs):
        self.calls.append((command, kwargs))
        job_path = command[-1]
        self.job_modes.append(os.stat(job_path).st_mode & 0o777)
        return FakeProcess()


@pytest.fixture
def killed(monkeypatch):
    pids = []
    monkeypatch.setattr(__util__, "terminate_pid", pids.append)
    return pids


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def supervisor(config, clock):
    return WorkerSupervisor(config, popen=FakePopen(), clock=clock, sleep=clock.sleep)


def record(phase, percent=0, detail="", timestamp="t0", **kwargs):
    return WorkerStatusRecord(
        phase=phase, percent=percent, detail=detail, timestamp=timestamp, pid=4242, **kwargs
    )


class TestStatusFile:
    """Tests for status record serialization."""

    def test_write_and_read(self, tmp_path):
        """Test a record survives a write/read cycle with its version."""
        path = tmp_path / "status.json"
        original = record(Phase.CAPTURE, 42, "Capturing C:")
        write_status(path, original)

        assert read_status(path) == original
        assert json.loads(path.read_text())["version"] == STATUS_VERSION

    def test_manifest_only_when_set(self):
        """Test the manifest key is written only for finished jobs."""
        assert "manifest" not in record(Phase.CAPTURE).to_dict()
        assert record(Phase.DONE, manifest="/m.json").to_dict()["manifest"] == "/m.json"

    def test_error_type_only_when_set(self):
        """Test the error class name is written for typed failures only."""
        assert "errorType" not in record(Phase.ERROR, error="boom").to_dict()
        data = record(Phase.ERROR, error="boom", error_type="ToolMissingError").to_dict()
        assert data["errorType"] == "ToolMissingError"
        assert WorkerStatusRecord.from_dict(data).error_type == "ToolMissingError"

    def test_worker_error_keeps_class(self):
        """Test a reported error is rebuilt as the class the worker raised."""
        error = worker_error(
            record(Phase.ERROR, error="could not reconnect", error_type="ReconnectExhaustedError")
        )
        assert type(error) is __util__.ReconnectExhaustedError
        assert str(error) == "could not reconnect"

    def test_worker_error_unknown_class(self):
        """Test names that are not BackupError classes fall back to WorkerError."""
        for name in (None, "ValueError", "Path", "NoSuchError"):
            error = worker_error(record(Phase.ERROR, error="boom", error_type=name))
            assert type(error) is __util__.WorkerError

    def test_missing_file(self, tmp_path):
        """Test a missing file reads as no record."""
        assert read_status(tmp_path / "status.json") is None

    def test_invalid_json(self, tmp_path):
        """Test a corrupt file reads as no record."""
        path = tmp_path / "status.json"
        path.write_text('{"phase": "capt')
        assert read_status(path) is None

    def test_newer_version_rejected(self, tmp_path):
        """Test records from a newer schema are ignored."""
        path = tmp_path / "status.json"
        data = record(Phase.CAPTURE).to_dict()
        data["version"] = STATUS_VERSION + 1
        path.write_text(json.dumps(data))

        assert read_status(path) is None
        with pytest.raises(ValueError, match="Unsupported status record version"):
            WorkerStatusRecord.from_dict(data)

    def test_unknown_phase_rejected(self):
        """Test unknown phases are invalid."""
        with pytest.raises(ValueError, match="Invalid status record"):
            WorkerStatusRecord.from_dict({"phase": "sleeping", "timestamp": "t"})

    def test_percent_is_clamped(self):
        """Test out of range percent values are clamped."""
        data = {"phase": "capture", "timestamp": "t", "percent": 250}
        assert WorkerStatusRecord.from_dict(data).percent == 100


class TestStatusWriter:
    """Tests for the worker side of the status protocol."""

    def test_update_and_finish(self, tmp_path):
        """Test progress and the final record are written."""
        path = tmp_path / "status.json"
        writer = StatusWriter(path, pid=99)

        writer.update(ProgressReport(Phase.CAPTURE, 30, "Capturing C:"))
        assert read_status(path).percent == 30

        writer.finish(tmp_path / "manifest.json")
        final = read_status(path)
        assert final.phase is Phase.DONE
        assert final.percent == 100
        assert final.manifest == str(tmp_path / "manifest.json")
        assert final.pid == 99

    def test_terminal_updates_ignored(self, tmp_path):
        """Test pipeline progress cannot write a done record without a manifest."""
        path = tmp_path / "status.json"
        writer = StatusWriter(path)
        writer.update(ProgressReport(Phase.UPLOAD, 95))
        writer.update(ProgressReport(Phase.DONE, 100))

        assert read_status(path).phase is Phase.UPLOAD

    def test_fail_keeps_progress(self, tmp_path):
        """Test the error record keeps the last percent."""
        path = tmp_path / "status.json"
        writer = StatusWriter(path)
        writer.update(ProgressReport(Phase.CAPTURE, 55, "Capturing D:"))
        writer.fail("wimlib-imagex exited with code 47")

        final = read_status(path)
        assert final.phase is Phase.ERROR
        assert final.percent == 55
        assert final.error == "wimlib-imagex exited with code 47"

    def test_fail_records_error_type(self, tmp_path):
        """Test the error class name travels with the error record."""
        path = tmp_path / "status.json"
        writer = StatusWriter(path)
        writer.fail("All 2 capture(s) failed", "AllPartitionsFailedError")

        assert read_status(path).error_type == "AllPartitionsFailedError"

    def test_abandoned_when_directory_removed(self, tmp_path):
        """Test an orphaned worker stops writing once its directory is gone."""
        work_dir = tmp_path / "job"
        work_dir.mkdir()
        writer = StatusWriter(work_dir / "status.json")
        writer.update(ProgressReport(Phase.CAPTURE, 5))
        (work_dir / "status.json").unlink()
        work_dir.rmdir()

        writer.update(ProgressReport(Phase.CAPTURE, 10))
        writer.fail("late failure")

        assert writer.abandoned
        assert not work_dir.exists()
        assert writer.record.phase is Phase.ERROR

    def test_heartbeat_refreshes_timestamp(self, tmp_path):
        """Test a silent worker still advances its status timestamp."""
        path = tmp_path / "status.json"
        writer = StatusWriter(path, heartbeat_interval=0.01)
        writer.start()
        try:
            first = read_status(path).timestamp
            deadline = time.monotonic() + 5
            while read_status(path).timestamp == first and time.monotonic() < deadline:
                time.sleep(0.01)
            assert read_status(path).timestamp != first
            assert read_status(path).phase is Phase.STARTING
        finally:
            writer.stop()


class TestLaunch:
    """Tests for WorkerSupervisor.launch."""

    def test_launch(self, config, image_job, supervisor):
        """Test the worker is fully detached and its job file private."""
        handle = supervisor.launch(image_job)

        command, kwargs = supervisor.popen.calls[0]
        assert command == worker_command(handle.job_path)
        assert command[1:4] == ["-m", "nas_backup_agent", "worker"]
        assert kwargs["stdin"] is subprocess.DEVNULL
        assert kwargs["stdout"] is subprocess.DEVNULL
        assert kwargs["stderr"] is subprocess.DEVNULL
        if os.name != "nt":
            assert kwargs["start_new_session"] is True
        assert supervisor.popen.job_modes == [0o600]

        payload = json.loads(handle.job_path.read_text())
        assert payload["job"]["target"]["password"] == "s3cret pass;word"
        assert payload["config"]["worker"]["missed_reads"] == 3
        assert payload["status"] == str(handle.status_path)
        assert handle.pid == 4242

    def test_breakaway_from_job_object(self):
        """Test Windows workers leave the controller's job object."""
        flags = supervisor_module._detach_kwargs(windows=True)["creationflags"]
        assert flags & CREATE_BREAKAWAY_FROM_JOB
        assert flags & DETACHED_PROCESS

        flags = supervisor_module._detach_kwargs(breakaway=False, windows=True)["creationflags"]
        assert not flags & CREATE_BREAKAWAY_FROM_JOB
        assert flags & DETACHED_PROCESS

        assert supervisor_module._detach_kwargs(windows=False) == {"start_new_session": True}

    def test_breakaway_denied_retries_without_it(
        self, monkeypatch, config, image_job, supervisor
    ):
        """Test a job object that forbids breakaway still gets a worker."""
        detach = supervisor_module._detach_kwargs
        monkeypatch.setattr(
            supervisor_module,
            "_detach_kwargs",
            lambda breakaway=True: detach(breakaway, windows=True),
        )
        popen = supervisor.popen

        def denying(command, **kwargs):
            if kwargs["creationflags"] & CREATE_BREAKAWAY_FROM_JOB:
                popen.calls.append((command, kwargs))
                raise PermissionError(5, "Access is denied")
            return popen(command, **kwargs)

        supervisor.popen = denying

        handle = supervisor.launch(image_job)

        assert handle.pid == 4242
        assert [bool(k["creationflags"] & CREATE_BREAKAWAY_FROM_JOB) for _, k in popen.calls] == [
            True,
            False,
        ]

    def test_popen_failure(self, config, image_job, clock):
        """Test a process creation error is a startup error."""

        def broken(command, **kwargs):
            raise OSError("Exec format error")

        supervisor = WorkerSupervisor(config, popen=broken, clock=clock, sleep=clock.sleep)

        with pytest.raises(__util__.WorkerStartupError, match="Exec format error"):
            supervisor.launch(image_job)

        assert list((Path(config.agent.state_dir) / "worker").iterdir()) == []


class TestSupervise:
    """Tests for WorkerSupervisor.supervise."""

    def _handle(self, tmp_path, artifact_dir=None):
        work_dir = tmp_path / "work"
        work_dir.mkdir()
        (work_dir / "worker.log").write_text("[03:15:00] INFO Worker started\n")
        return WorkerHandle(
            work_dir=work_dir,
            pid=4242,
            launched_at=0.0,
            artifact_dir=artifact_dir,
            process=FakeProcess(),
        )

    def test_worker_never_starts(self, tmp_path, supervisor, clock, killed):
        """Test a missing status file past the grace period is a startup failure."""
        handle = self._handle(tmp_path)

        with pytest.raises(__util__.WorkerStartupError, match="no status file after 5"):
            supervisor.supervise(handle)

        assert clock.now > supervisor.settings.startup_grace
        assert killed == [4242]
        assert not handle.work_dir.exists()
        assert "Worker started" in handle.worker_log

    def test_done(self, tmp_path, supervisor):
        """Test a finished worker returns its final record."""
        handle = self._handle(tmp_path)
        write_status(handle.status_path, record(Phase.DONE, 100, manifest="/m.json"))
        seen = []

        final = supervisor.supervise(handle, on_progress=seen.append)

        assert final.manifest == "/m.json"
        assert seen == [ProgressReport(Phase.DONE, 100)]
        assert not handle.work_dir.exists()
        assert handle.process.polled == 1

    def test_error(self, tmp_path, supervisor):
        """Test a worker error is raised in the controller."""
        handle = self._handle(tmp_path)
        write_status(
            handle.status_path, record(Phase.ERROR, 40, error="All 1 capture(s) failed")
        )

        with pytest.raises(__util__.WorkerError, match="All 1 capture"):
            supervisor.supervise(handle)

    def test_error_keeps_its_class(self, tmp_path, supervisor):
        """Test an upload failure in the worker surfaces as the same error class."""
        handle = self._handle(tmp_path)
        write_status(
            handle.status_path,
            record(
                Phase.ERROR,
                97,
                error="Could not reconnect to upload metadata. The image is likely intact.",
                error_type="ReconnectExhaustedError",
            ),
        )

        with pytest.raises(__util__.ReconnectExhaustedError, match="likely intact"):
            supervisor.supervise(handle)
        assert not handle.work_dir.exists()

    def test_briefly_unreadable_status_is_not_a_stall(
        self, tmp_path, config, supervisor, clock, killed
    ):
        """Test a status file missing for fewer than missed_reads polls is tolerated."""
        config.worker.poll_interval = 6
        handle = self._handle(tmp_path)
        write_status(handle.status_path, record(Phase.CAPTURE, 30, "Capturing C:"))

        def tick(now):
            if now == 6:
                handle.status_path.unlink()
            elif now == 18:
                write_status(handle.status_path, record(Phase.CAPTURE, 50, timestamp="t18"))
            elif now == 24:
                write_status(
                    handle.status_path,
                    record(Phase.DONE, 100, timestamp="t24", manifest="/m.json"),
                )

        clock.ticks.append(tick)

        final = supervisor.supervise(handle)

        # At 12s the last change is past the stall grace, but only two reads missed
        assert final.phase is Phase.DONE
        assert killed == []

    def test_progress_deduplicated(self, tmp_path, supervisor, clock):
        """Test heartbeats alone do not produce progress callbacks."""
        handle = self._handle(tmp_path)
        script = {
            1.0: record(Phase.CAPTURE, 20, "Capturing C:", timestamp="t1"),
            2.0: record(Phase.CAPTURE, 20, "Capturing C:", timestamp="t2"),
            3.0: record(Phase.CAPTURE, 40, "Capturing D:", timestamp="t3"),
            4.0: record(Phase.DONE, 100, timestamp="t4", manifest="/m.json"),
        }
        clock.ticks.append(
            lambda now: now in script and write_status(handle.status_path, script[now])
        )
        seen = []

        supervisor.supervise(handle, on_progress=seen.append)

        assert [(r.phase, r.percent) for r in seen] == [
            (Phase.CAPTURE, 20),
            (Phase.CAPTURE, 40),
            (Phase.DONE, 100),
        ]

    def test_stalled_worker_is_killed(self, tmp_path, supervisor, clock, killed):
        """Test an unchanged status past the stall grace declares the worker hung."""
        handle = self._handle(tmp_path)
        write_status(handle.status_path, record(Phase.CAPTURE, 30, "Capturing C:"))

        with pytest.raises(__util__.WorkerStalledError, match="phase capture"):
            supervisor.supervise(handle)

        assert clock.now > supervisor.settings.stall_grace
        assert killed == [4242]

    def test_growing_artifact_is_not_a_stall(self, tmp_path, supervisor, clock, killed):
        """Test artifact growth counts as a heartbeat for a silent capture."""
        artifacts = tmp_path / "artifacts"
        artifacts.mkdir()
        handle = self._handle(tmp_path, artifact_dir=artifacts)
        write_status(handle.status_path, record(Phase.CAPTURE, 30, "Capturing C:"))

        def grow(now):
            with open(artifacts / "C.wim", "ab") as f:
                f.write(b"x" * 1024)
            if now >= 40:
                write_status(
                    handle.status_path,
                    record(Phase.DONE, 100, timestamp="t-done", manifest="/m.json"),
                )

        clock.ticks.append(grow)

        final = supervisor.supervise(handle)

        assert final.phase is Phase.DONE
        assert killed == []

    def test_overall_timeout(self, tmp_path, config, supervisor, clock, killed):
        """Test a worker exceeding the job timeout is killed."""
        config.timeouts.worker = 20
        handle = self._handle(tmp_path)
        clock.ticks.append(
            lambda now: write_status(
                handle.status_path, record(Phase.CAPTURE, 30, timestamp=f"t{now}")
            )
        )
        write_status(handle.status_path, record(Phase.CAPTURE, 30))

        with pytest.raises(__util__.StageTimeoutError, match="exceeded 20 seconds"):
            supervisor.supervise(handle)

        assert killed == [4242]

    def test_keepalive(self, tmp_path, config, supervisor, clock):
        """Test the share keep-alive runs on its interval."""
        config.worker.keepalive_interval = 2
        handle = self._handle(tmp_path)
        calls = []
        clock.ticks.append(
            lambda now: now >= 6
            and write_status(
                handle.status_path, record(Phase.DONE, 100, timestamp="t-done", manifest="/m")
            )
        )
        write_status(handle.status_path, record(Phase.CAPTURE, 30))

        supervisor.supervise(handle, keepalive=lambda: calls.append(clock.now) or False)

        assert calls == [2.0, 4.0]


class TestWorkerMain:
    """Tests for the worker entry point."""

    def _job_file(self, tmp_path, job, config_data):
        work_dir = tmp_path / "work"
        work_dir.mkdir()
        payload = {
            "job": job.to_dict(),
            "config": config_data,
            "status": str(work_dir / "status.json"),
            "log": str(work_dir / "worker.log"),
        }
        return __util__.write_private_file(work_dir / "job.json", json.dumps(payload))

    def test_read_job_file_deletes_it(self, tmp_path):
        """Test credentials do not stay on disk after the worker read them."""
        path = __util__.write_private_file(tmp_path / "job.json", '{"job": 1}')
        assert read_job_file(path) == {"job": 1}
        assert not path.exists()

    def test_config_error_reports_failure(self, tmp_path, image_job):
        """Test an unusable job file ends in an error record."""
        path = self._job_file(tmp_path, image_job, {"bogus": {}})

        assert run_worker(path) == 1

        status = read_status(tmp_path / "work" / "status.json")
        assert status.phase is Phase.ERROR
        assert "Unknown section(s): bogus" in status.error
        assert not path.exists()
        assert "Worker failed" in (tmp_path / "work" / "worker.log").read_text()

    def test_success_writes_done(self, tmp_path, monkeypatch, config, files_job, make_backend):
        """Test a finished job leaves a done record pointing at the manifest."""
        runner = FakeRunner()
        monkeypatch.setattr(
            pipeline_module,
            "CaptureExecutor",
            lambda command_timeout=60: CaptureExecutor(runner, command_timeout),
        )
        backend = make_backend()
        backend.admin_for_files = False
        path = self._job_file(tmp_path, files_job, dataclasses.asdict(config))

        code = run_worker(path, backend_factory=lambda name, config: backend)

        assert code == 0
        status = read_status(tmp_path / "work" / "status.json")
        assert status.phase is Phase.DONE
        assert status.manifest.endswith(".json")
        assert len(runner.called("robocopy")) == 2

    def test_failure_keeps_error_class(
        self, tmp_path, monkeypatch, config, files_job, make_backend
    ):
        """Test the error record names the class of the pipeline failure."""
        backend = make_backend(fail_mounts=10)
        backend.admin_for_files = False
        path = self._job_file(tmp_path, files_job, dataclasses.asdict(config))

        assert run_worker(path, backend_factory=lambda name, config: backend) == 1

        status = read_status(tmp_path / "work" / "status.json")
        assert status.phase is Phase.ERROR
        assert status.error_type == "ShareConnectionError"
        assert type(worker_error(status)) is __util__.ShareConnectionError
