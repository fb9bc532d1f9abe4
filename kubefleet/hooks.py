"""Lifecycle hooks.

Hooks are registered on a :class:`HookRegistry` before an operation starts and
frozen into a :class:`HookRunner` with :meth:`HookRegistry.build`. The runner
only executes: it runs the hooks of one phase in registration order, stops at
the first failure and never retries.
"""

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType

from kubefleet.exceptions import HookError
from kubefleet.hostset import unique
from kubefleet.logging_config import get_logger
from kubefleet.models.runtime import Plugin

logger = get_logger(__name__)


class Phase(str, Enum):
    """Lifecycle checkpoints hooks can be bound to."""

    PRE_INSTALL = "pre-install"
    POST_INSTALL = "post-install"
    PRE_SCALE_UP = "pre-scaleup"
    POST_SCALE_UP = "post-scaleup"
    PRE_UNINSTALL = "pre-uninstall"
    POST_UNINSTALL = "post-uninstall"
    UPGRADE = "upgrade"
    ROLLBACK = "rollback"
    PRE_INIT_HOST = "pre-init-host"
    POST_INIT_HOST = "post-init-host"
    PRE_CLEAN_HOST = "pre-clean-host"
    POST_CLEAN_HOST = "post-clean-host"
    PRE_JOIN = "pre-join"

    @property
    def is_host_phase(self) -> bool:
        return self in HOST_PHASES


HOST_PHASES = frozenset(
    {Phase.PRE_INIT_HOST, Phase.POST_INIT_HOST, Phase.PRE_CLEAN_HOST, Phase.POST_CLEAN_HOST, Phase.PRE_JOIN}
)


@dataclass(frozen=True)
class Hook:
    name: str
    fn: Callable


class HookRunner:
    """Runs the hooks bound to a phase. Built by :class:`HookRegistry`."""

    def __init__(self, hooks: dict[Phase, tuple[Hook, ...]]):
        self._hooks = MappingProxyType(dict(hooks))

    def hooks_for(self, phase: Phase) -> tuple[Hook, ...]:
        return self._hooks.get(Phase(phase), ())

    def run_phase(self, phase: Phase) -> None:
        """Run every cluster hook of ``phase``.

        Raises:
            HookError: From the first hook that fails; later hooks do not run
        """
        self._run(Phase(phase), lambda hook: hook.fn())

    def run_host_phase(self, phase: Phase, hosts: list[str]) -> None:
        """Run every host hook of ``phase`` against ``hosts``.

        Raises:
            HookError: From the first hook that fails; later hooks do not run
        """
        targets = unique(hosts)
        if not targets:
            return
        self._run(Phase(phase), lambda hook: hook.fn(targets))

    def _run(self, phase: Phase, call: Callable[[Hook], object]) -> None:
        for hook in self.hooks_for(phase):
            logger.info(f"Running {phase.value} hook '{hook.name}'")
            try:
                call(hook)
            except Exception as e:
                raise HookError(phase.value, hook.name, e) from e


class HookRegistry:
    """Collects hooks for one operation."""

    def __init__(self):
        self._hooks: dict[Phase, list[Hook]] = {}

    def add_hook(self, phase: Phase, fn: Callable[[], object], name: str | None = None) -> "HookRegistry":
        """Register a zero-argument hook for a cluster phase."""
        phase = Phase(phase)
        if phase.is_host_phase:
            raise ValueError(f"{phase.value} is a host phase, use add_host_hook")
        return self._add(phase, fn, name)

    def add_host_hook(
        self, phase: Phase, fn: Callable[[list[str]], object], name: str | None = None
    ) -> "HookRegistry":
        """Register a hook receiving the host subset of a host phase."""
        phase = Phase(phase)
        if not phase.is_host_phase:
            raise ValueError(f"{phase.value} is a cluster phase, use add_hook")
        return self._add(phase, fn, name)

    def _add(self, phase: Phase, fn: Callable, name: str | None) -> "HookRegistry":
        hook = Hook(name or getattr(fn, "__name__", repr(fn)), fn)
        self._hooks.setdefault(phase, []).append(hook)
        return self

    def build(self) -> HookRunner:
        return HookRunner({phase: tuple(hooks) for phase, hooks in self._hooks.items()})


def hooks_from_plugins(plugins: list[Plugin], driver, registry: HookRegistry | None = None) -> HookRegistry:
    """Register shell plugins as hooks.

    Cluster phase plugins run on master0. Host phase plugins run on the given
    hosts whose roles intersect the plugin scope, or on all of them when the
    plugin has no scope.
    """
    registry = registry or HookRegistry()

    for plugin in plugins:
        try:
            phase = Phase(plugin.action)
        except ValueError:
            logger.warning(f"Plugin '{plugin.name}' has unknown action '{plugin.action}', skipping")
            continue

        if phase.is_host_phase:
            registry.add_host_hook(phase, _host_plugin_hook(plugin, driver), plugin.name)
        else:
            registry.add_hook(phase, _cluster_plugin_hook(plugin, driver), plugin.name)

    return registry


def _cluster_plugin_hook(plugin: Plugin, driver) -> Callable[[], None]:
    def run() -> None:
        master0 = driver.get_master0()
        driver.cmd_async(master0, driver.get_host_env(master0), plugin.data)

    return run


def _host_plugin_hook(plugin: Plugin, driver) -> Callable[[list[str]], None]:
    scope = set(plugin.scope_roles)

    def run(hosts: list[str]) -> None:
        targets = [h for h in hosts if not scope or scope & set(driver.get_role_list_by_host_ip(h))]
        if not targets:
            return
        driver.execute(
            targets,
            lambda h: driver.cmd_async(h, driver.get_host_env(h), plugin.data),
            f"plugin-{plugin.name}",
        )

    return run
