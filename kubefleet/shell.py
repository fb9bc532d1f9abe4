"""Shell command builders shared by the host-facing components."""

import shlex

HOSTS_FILE = "/etc/hosts"
HOSTS_MARKER = "#kubefleet"


def _hosts_pattern(hostname: str) -> str:
    escaped = hostname.replace(".", r"\.")
    return f"/ {escaped} {HOSTS_MARKER}$/d"


def set_host_alias(hostname: str, ip: str, hosts_file: str = HOSTS_FILE) -> str:
    """Command mapping ``hostname`` to ``ip`` in the hosts file.

    Any previous kubefleet entry for the hostname is replaced, so the command is
    safe to repeat and also moves an alias to a new address.
    """
    line = f"{ip} {hostname} {HOSTS_MARKER}"
    return (
        f"sed -i {shlex.quote(_hosts_pattern(hostname))} {hosts_file} && "
        f"echo {shlex.quote(line)} >> {hosts_file}"
    )


def delete_host_alias(hostname: str, hosts_file: str = HOSTS_FILE) -> str:
    """Command removing the kubefleet entry for ``hostname``."""
    return f"sed -i {shlex.quote(_hosts_pattern(hostname))} {hosts_file}"


def export_env(env: dict[str, str] | None) -> str:
    """Render ``env`` as a prefix of ``export`` statements."""
    if not env:
        return ""
    return "".join(f"export {key}={shlex.quote(str(value))}; " for key, value in env.items())


def in_scripts_dir(rootfs: str, script: str, *args) -> str:
    """Command running a rootfs script from the rootfs ``scripts`` directory."""
    rendered = " ".join(shlex.quote(str(a)) for a in args)
    return f"cd {rootfs}/scripts && bash {script} {rendered}".rstrip()


def path_exists(path: str) -> str:
    """Command printing ``yes`` when ``path`` exists and ``no`` otherwise."""
    return f"if [ -e {shlex.quote(path)} ]; then echo yes; else echo no; fi"
