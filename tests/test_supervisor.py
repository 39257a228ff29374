"""
Tests for the service supervisor — lifecycle, keep-alive, reattach.

Services are real processes (tiny Python daemons) so signals, exit
codes and log files behave exactly as in production.
"""

import os
import signal
import time
from pathlib import Path

import pytest

from kegworks.adapters.process import pid_alive
from kegworks.core.errors import NotFound, ServiceOperationFailed
from kegworks.core.models import InstalledRecord, ServiceSpec, ServiceState
from kegworks.core.persistence.state_file import RecordStore
from kegworks.core.services.supervisor import ServiceSupervisor

from tests.helpers import service_script, wait_for


@pytest.fixture
def store(tmp_path: Path) -> RecordStore:
    return RecordStore(tmp_path / "state")


def _make_supervisor(store: RecordStore | None = None, **kwargs) -> ServiceSupervisor:
    options = dict(
        stop_grace_period=2.0,
        restart_base_delay=0.2,
        restart_max_delay=0.5,
        restart_stable_after=5.0,
        poll_interval=0.05,
    )
    options.update(kwargs)
    return ServiceSupervisor(store, **options)


@pytest.fixture
def supervisor(store: RecordStore):
    sup = _make_supervisor(store)
    yield sup
    sup.shutdown(stop_services=True)


@pytest.fixture
def daemon(tmp_path: Path) -> Path:
    path = tmp_path / "bin" / "demo"
    path.parent.mkdir(parents=True)
    path.write_bytes(service_script("1.0"))
    path.chmod(0o755)
    return path


def _spec(tmp_path: Path, *, keep_alive: bool = True) -> ServiceSpec:
    return ServiceSpec(
        command=["{binary}"],
        keep_alive=keep_alive,
        environment={"KEG_TEST_VAR": "from-spec"},
        stdout_log_path=str(tmp_path / "log" / "demo.log"),
        stderr_log_path=str(tmp_path / "log" / "demo.error.log"),
    )


def _record(store: RecordStore, daemon: Path) -> None:
    store.save(InstalledRecord(name="demo", version="1.0", binary_paths=[str(daemon)]))


class TestLifecycle:
    def test_unregistered(self, supervisor: ServiceSupervisor):
        assert supervisor.status("demo") == ServiceState.UNREGISTERED
        with pytest.raises(NotFound) as exc:
            supervisor.start("demo")
        assert exc.value.stage == "service"

    def test_register_start_stop(self, supervisor, daemon, tmp_path):
        supervisor.register("demo", _spec(tmp_path), daemon)
        assert supervisor.status("demo") == ServiceState.STOPPED

        assert supervisor.start("demo") == ServiceState.RUNNING
        pid = supervisor.pid("demo")
        assert pid is not None

        assert supervisor.stop("demo") is True
        assert supervisor.status("demo") == ServiceState.STOPPED
        assert supervisor.pid("demo") is None
        assert wait_for(lambda: not pid_alive(pid))

    def test_start_twice_is_idempotent(self, supervisor, daemon, tmp_path):
        supervisor.register("demo", _spec(tmp_path), daemon)
        supervisor.start("demo")
        pid = supervisor.pid("demo")
        supervisor.start("demo")
        assert supervisor.pid("demo") == pid

    def test_stop_when_stopped(self, supervisor, daemon, tmp_path):
        supervisor.register("demo", _spec(tmp_path), daemon)
        assert supervisor.stop("demo") is False
        assert supervisor.status("demo") == ServiceState.STOPPED

    def test_restart_gives_new_pid(self, supervisor, daemon, tmp_path):
        supervisor.register("demo", _spec(tmp_path), daemon)
        supervisor.start("demo")
        first = supervisor.pid("demo")
        assert supervisor.restart("demo") == ServiceState.RUNNING
        assert supervisor.pid("demo") not in (None, first)

    def test_deregister_stops(self, supervisor, daemon, tmp_path):
        supervisor.register("demo", _spec(tmp_path), daemon)
        supervisor.start("demo")
        pid = supervisor.pid("demo")
        supervisor.deregister("demo")
        assert supervisor.status("demo") == ServiceState.UNREGISTERED
        assert wait_for(lambda: not pid_alive(pid))

    def test_register_updates_in_place(self, supervisor, daemon, tmp_path):
        supervisor.register("demo", _spec(tmp_path), daemon)
        supervisor.start("demo")
        pid = supervisor.pid("demo")
        supervisor.register("demo", _spec(tmp_path, keep_alive=False), daemon)
        assert supervisor.status("demo") == ServiceState.RUNNING
        assert supervisor.pid("demo") == pid
        assert supervisor.describe("demo")["keep_alive"] is False


class TestEnvironmentAndLogs:
    def test_environment_and_log_files(self, supervisor, daemon, tmp_path):
        supervisor.register("demo", _spec(tmp_path), daemon)
        supervisor.start("demo")

        out = tmp_path / "log" / "demo.log"
        err = tmp_path / "log" / "demo.error.log"
        assert wait_for(lambda: out.exists() and "ENV from-spec" in out.read_text())
        assert wait_for(lambda: err.exists() and "stderr line" in err.read_text())
        assert "stderr line" not in out.read_text()

    def test_logs_append_across_restarts(self, supervisor, daemon, tmp_path):
        supervisor.register("demo", _spec(tmp_path), daemon)
        out = tmp_path / "log" / "demo.log"

        supervisor.start("demo")
        assert wait_for(lambda: out.exists() and out.read_text().count("started") == 1)
        supervisor.restart("demo")
        assert wait_for(lambda: out.read_text().count("started") == 2)

    def test_path_gets_standard_entries(self, supervisor, tmp_path, monkeypatch):
        monkeypatch.setenv("PATH", str(tmp_path / "nowhere"))
        script = tmp_path / "bin" / "envdump"
        script.parent.mkdir(parents=True, exist_ok=True)
        script.write_text(
            "#!/bin/sh\necho \"PATH=$PATH\"\nexec sleep 30\n"
        )
        script.chmod(0o755)
        out = tmp_path / "log" / "env.log"
        spec = ServiceSpec(command=["{binary}"], stdout_log_path=str(out))

        supervisor.register("envdump", spec, script)
        supervisor.start("envdump")
        assert wait_for(lambda: out.exists() and "PATH=" in out.read_text())
        path_line = out.read_text().strip().splitlines()[0]
        assert path_line.startswith("PATH=" + str(tmp_path / "nowhere"))
        assert ":/usr/bin:" in path_line

    def test_launch_failure_keeps_state(self, supervisor, tmp_path):
        supervisor.register("ghost", _spec(tmp_path), tmp_path / "does-not-exist")
        with pytest.raises(ServiceOperationFailed) as exc:
            supervisor.start("ghost")
        assert exc.value.formula == "ghost"
        assert exc.value.exit_code == 9
        assert supervisor.status("ghost") == ServiceState.STOPPED


class TestKeepAlive:
    def test_killed_service_is_restarted(self, supervisor, daemon, tmp_path):
        supervisor.register("demo", _spec(tmp_path), daemon)
        supervisor.start("demo")
        first = supervisor.pid("demo")

        os.kill(first, signal.SIGKILL)

        assert wait_for(lambda: supervisor.pid("demo") not in (None, first), timeout=5)
        assert supervisor.status("demo") == ServiceState.RUNNING
        info = supervisor.describe("demo")
        assert info["restarts"] == 1
        assert info["last_exit_code"] == -signal.SIGKILL

    def test_without_keep_alive_becomes_crashed(self, supervisor, daemon, tmp_path):
        supervisor.register("demo", _spec(tmp_path, keep_alive=False), daemon)
        supervisor.start("demo")
        pid = supervisor.pid("demo")

        os.kill(pid, signal.SIGKILL)

        assert wait_for(lambda: supervisor.status("demo") == ServiceState.CRASHED)
        time.sleep(0.5)
        assert supervisor.status("demo") == ServiceState.CRASHED
        assert supervisor.pid("demo") is None

    def test_crashed_service_can_be_started_again(self, supervisor, daemon, tmp_path):
        supervisor.register("demo", _spec(tmp_path, keep_alive=False), daemon)
        supervisor.start("demo")
        os.kill(supervisor.pid("demo"), signal.SIGKILL)
        assert wait_for(lambda: supervisor.status("demo") == ServiceState.CRASHED)

        assert supervisor.start("demo") == ServiceState.RUNNING

    def test_stop_cancels_pending_restart(self, store, daemon, tmp_path):
        sup = _make_supervisor(store, restart_base_delay=30.0, restart_max_delay=30.0)
        try:
            sup.register("demo", _spec(tmp_path), daemon)
            sup.start("demo")
            os.kill(sup.pid("demo"), signal.SIGKILL)
            assert wait_for(lambda: sup.describe("demo")["restarts"] == 1)

            started = time.monotonic()
            sup.stop("demo")
            assert time.monotonic() - started < 5
            assert sup.status("demo") == ServiceState.STOPPED

            time.sleep(0.3)
            assert sup.pid("demo") is None
        finally:
            sup.shutdown(stop_services=True)

    def test_user_stop_is_not_restarted(self, supervisor, daemon, tmp_path):
        supervisor.register("demo", _spec(tmp_path), daemon)
        supervisor.start("demo")
        supervisor.stop("demo")
        time.sleep(0.6)
        assert supervisor.status("demo") == ServiceState.STOPPED
        assert supervisor.pid("demo") is None


class TestReattach:
    def test_state_is_persisted(self, supervisor, store, daemon, tmp_path):
        _record(store, daemon)
        supervisor.register("demo", _spec(tmp_path), daemon)
        supervisor.start("demo")

        reg = store.load("demo").service
        assert reg.state == ServiceState.RUNNING
        assert reg.pid == supervisor.pid("demo")

        supervisor.stop("demo")
        reg = store.load("demo").service
        assert reg.state == ServiceState.STOPPED
        assert reg.pid is None

    def test_load_reattaches_live_pid(self, supervisor, store, daemon, tmp_path):
        _record(store, daemon)
        supervisor.register("demo", _spec(tmp_path), daemon)
        supervisor.start("demo")
        pid = supervisor.pid("demo")
        supervisor.shutdown(stop_services=False)

        other = _make_supervisor(store)
        assert other.load() == 1
        assert other.status("demo") == ServiceState.RUNNING
        assert other.pid("demo") == pid

        assert other.stop("demo") is True
        assert wait_for(lambda: not pid_alive(pid))

    def test_load_reports_dead_pid_as_crashed(self, store, daemon, tmp_path):
        _record(store, daemon)
        first = _make_supervisor(store)
        first.register("demo", _spec(tmp_path), daemon)
        first.start("demo")
        pid = first.pid("demo")
        first.shutdown(stop_services=False)
        os.kill(pid, signal.SIGKILL)
        assert wait_for(lambda: not pid_alive(pid))

        other = _make_supervisor(store)
        other.load()
        assert other.status("demo") == ServiceState.CRASHED

    def test_stop_of_dead_reattached_pid_keeps_crash(self, store, daemon, tmp_path):
        _record(store, daemon)
        first = _make_supervisor(store)
        first.register("demo", _spec(tmp_path, keep_alive=False), daemon)
        first.start("demo")
        pid = first.pid("demo")
        first.shutdown(stop_services=False)
        os.kill(pid, signal.SIGKILL)
        assert wait_for(lambda: not pid_alive(pid))

        other = _make_supervisor(store)
        other.load()
        assert other.stop("demo") is False
        assert other.status("demo") == ServiceState.CRASHED
        assert store.load("demo").service.state == ServiceState.CRASHED
        assert store.load("demo").service.pid is None

    def test_resume_relaunches_dead_keep_alive(self, store, daemon, tmp_path):
        _record(store, daemon)
        first = _make_supervisor(store)
        first.register("demo", _spec(tmp_path), daemon)
        first.start("demo")
        pid = first.pid("demo")
        first.shutdown(stop_services=False)
        os.kill(pid, signal.SIGKILL)
        assert wait_for(lambda: not pid_alive(pid))

        other = _make_supervisor(store)
        other.load()
        try:
            other.resume()
            assert other.status("demo") == ServiceState.RUNNING
            assert other.pid("demo") not in (None, pid)
        finally:
            other.shutdown(stop_services=True)

