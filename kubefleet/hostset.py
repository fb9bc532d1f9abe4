"""Host set arithmetic.

Hosts are compared by address value: ``"10.0.0.1"``, ``IPv4Address("10.0.0.1")``
and ``" 10.0.0.1 "`` are the same host. Every function returns canonical string
forms and keeps the caller's ordering so retries are deterministic.
"""

import ipaddress
from collections.abc import Iterable


def normalize(host) -> str:
    """Return the canonical string form of a host address.

    IP addresses are rendered the way ``ipaddress`` renders them (compressed
    IPv6, no leading zeros). Anything that is not an IP address, such as a
    hostname, is returned stripped and otherwise untouched.
    """
    text = str(host).strip()
    try:
        return str(ipaddress.ip_address(text))
    except ValueError:
        return text


def unique(hosts: Iterable) -> list[str]:
    """Normalize hosts and drop duplicates, keeping first occurrence order."""
    seen: set[str] = set()
    result = []
    for host in hosts:
        key = normalize(host)
        if key not in seen:
            seen.add(key)
            result.append(key)
    return result


def contains(hosts: Iterable, host) -> bool:
    """Check whether ``host`` is a member of ``hosts`` by address value."""
    key = normalize(host)
    return any(normalize(h) == key for h in hosts)


def diff(old: Iterable, new: Iterable) -> tuple[list[str], list[str]]:
    """Compute which hosts joined and which departed between two host sets.

    Args:
        old: Currently deployed hosts
        new: Desired hosts

    Returns:
        Tuple of (joined, departed). ``joined`` holds hosts of ``new`` absent
        from ``old`` in ``new``'s order, ``departed`` holds hosts of ``old``
        absent from ``new`` in ``old``'s order.
    """
    old_hosts = unique(old)
    new_hosts = unique(new)
    old_index = set(old_hosts)
    new_index = set(new_hosts)

    joined = [h for h in new_hosts if h not in old_index]
    departed = [h for h in old_hosts if h not in new_index]
    return joined, departed


def remove_hosts(hosts: Iterable, to_remove: Iterable) -> list[str]:
    """Return ``hosts`` without any of ``to_remove``, in original order."""
    removed = set(unique(to_remove))
    return [h for h in unique(hosts) if h not in removed]


def union(first: Iterable, second: Iterable) -> list[str]:
    """Return the ordered union of two host sets (``first`` then new ones from ``second``)."""
    return unique([*first, *second])
