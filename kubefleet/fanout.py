"""Run one operation on many hosts at once.

Every multi-host step goes through :func:`run_on_hosts`, which starts one
worker thread per host and waits for all of them. The failures of the step
are reported together as a single :class:`~kubefleet.exceptions.FanoutError`.
"""

from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, wait

from tenacity import Retrying, stop_after_attempt, wait_incrementing

from kubefleet.exceptions import FanoutError, SSHNotReadyError
from kubefleet.hostset import unique
from kubefleet.logging_config import get_logger

logger = get_logger(__name__)

SSH_READY_ATTEMPTS = 10
SSH_READY_INTERVAL = 1.0


def run_on_hosts(hosts: Iterable, fn: Callable[[str], object], step: str = "fanout") -> dict:
    """Run ``fn(host)`` on every host in parallel.

    Args:
        hosts: Target hosts
        fn: Callable taking the host address
        step: Step name used in logs and in the aggregated error

    Returns:
        Mapping of host to the value returned by ``fn``

    Raises:
        FanoutError: If ``fn`` raised for at least one host. Raised only after
            every worker has finished; sibling hosts are never cancelled.
    """
    targets = unique(hosts)
    if not targets:
        return {}

    logger.debug(f"[{step}] running on {len(targets)} host(s): {', '.join(targets)}")
    with ThreadPoolExecutor(max_workers=len(targets), thread_name_prefix=step) as executor:
        futures = {host: executor.submit(fn, host) for host in targets}
        wait(futures.values())

    results = {}
    failures = {}
    for host, future in futures.items():
        error = future.exception()
        if error is not None:
            logger.error(f"[{step}] {host}: {error}")
            failures[host] = error
        else:
            results[host] = future.result()

    if failures:
        raise FanoutError(step, failures)
    return results


def wait_ssh_ready(
    driver,
    hosts: Iterable,
    attempts: int = SSH_READY_ATTEMPTS,
    interval: float = SSH_READY_INTERVAL,
) -> None:
    """Wait until every host answers over SSH.

    Each host is pinged with ``driver.ping`` up to ``attempts`` times, waiting
    ``interval``, ``2 * interval``, ... seconds between tries.

    Raises:
        SSHNotReadyError: Listing every host that never answered
    """

    def ping_until_ready(host: str) -> None:
        for attempt in Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_incrementing(start=interval, increment=interval),
            reraise=True,
        ):
            with attempt:
                driver.ping(host)

    try:
        run_on_hosts(hosts, ping_until_ready, step="wait-ssh-ready")
    except FanoutError as e:
        raise SSHNotReadyError(e.hosts) from e


def check_hosts_ssh(driver, hosts: Iterable) -> list[str]:
    """Ping every host once and return the ones that did not answer."""
    try:
        run_on_hosts(hosts, driver.ping, step="check-ssh")
    except FanoutError as e:
        for host, error in e.failures.items():
            logger.warning(f"Host {host} is not reachable over SSH: {error}")
        return e.hosts
    return []
