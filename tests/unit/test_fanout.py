"""Unit tests for the host fan-out primitive."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from kubefleet.exceptions import FanoutError, RemoteExecutionError, SSHNotReadyError
from kubefleet.fanout import check_hosts_ssh, run_on_hosts, wait_ssh_ready


def test_run_on_hosts_returns_results_per_host():
    results = run_on_hosts(["10.0.0.1", "10.0.0.2"], lambda h: h.split(".")[-1], "echo")

    assert results == {"10.0.0.1": "1", "10.0.0.2": "2"}


def test_run_on_hosts_with_no_hosts_does_nothing():
    fn = MagicMock()

    assert run_on_hosts([], fn, "noop") == {}
    fn.assert_not_called()


def test_run_on_hosts_deduplicates_hosts():
    calls = []
    lock = threading.Lock()

    def record(host):
        with lock:
            calls.append(host)

    run_on_hosts(["10.0.0.1", "10.0.0.1", " 10.0.0.1"], record, "dedup")

    assert calls == ["10.0.0.1"]


def test_one_failing_host_does_not_cancel_siblings():
    """Three hosts, the second fails: one aggregated error, the others still finish."""
    hosts = ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
    completed = []
    lock = threading.Lock()

    def work(host):
        if host == "10.0.0.2":
            raise RemoteExecutionError(host, "exit status 1")
        # Outlive the failing worker
        time.sleep(0.05)
        with lock:
            completed.append(host)

    with pytest.raises(FanoutError) as exc_info:
        run_on_hosts(hosts, work, "install")

    error = exc_info.value
    assert error.step == "install"
    assert error.hosts == ["10.0.0.2"]
    assert isinstance(error.failures["10.0.0.2"], RemoteExecutionError)
    assert sorted(completed) == ["10.0.0.1", "10.0.0.3"]


def test_run_on_hosts_runs_hosts_in_parallel():
    barrier = threading.Barrier(3, timeout=5)

    run_on_hosts(["10.0.0.1", "10.0.0.2", "10.0.0.3"], lambda h: barrier.wait(), "parallel")


def test_failures_are_reported_in_host_order():
    def work(host):
        raise RuntimeError(host)

    with pytest.raises(FanoutError) as exc_info:
        run_on_hosts(["10.0.0.3", "10.0.0.1"], work, "all-fail")

    assert exc_info.value.hosts == ["10.0.0.3", "10.0.0.1"]


def test_wait_ssh_ready_retries_until_reachable():
    attempts = {"10.0.0.1": 0}
    driver = MagicMock()

    def ping(host):
        attempts[host] += 1
        if attempts[host] < 3:
            raise RemoteExecutionError(host, "connection refused")

    driver.ping.side_effect = ping

    wait_ssh_ready(driver, ["10.0.0.1"], attempts=5, interval=0)

    assert attempts["10.0.0.1"] == 3


def test_wait_ssh_ready_gives_up_after_attempts():
    driver = MagicMock()
    driver.ping.side_effect = RemoteExecutionError("10.0.0.1", "refused")

    with pytest.raises(SSHNotReadyError) as exc_info:
        wait_ssh_ready(driver, ["10.0.0.1"], attempts=2, interval=0)

    assert exc_info.value.hosts == ["10.0.0.1"]
    assert driver.ping.call_count == 2


def test_check_hosts_ssh_returns_unreachable_hosts():
    driver = MagicMock()

    def ping(host):
        if host == "10.0.0.2":
            raise RemoteExecutionError(host, "no route to host")

    driver.ping.side_effect = ping

    assert check_hosts_ssh(driver, ["10.0.0.1", "10.0.0.2"]) == ["10.0.0.2"]
    assert check_hosts_ssh(driver, ["10.0.0.1"]) == []
