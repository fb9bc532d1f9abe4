"""IPVS routing for the highly available registry."""

import yaml

from kubefleet.hostset import normalize

DEFAULT_VIP = "10.103.97.2"
DEFAULT_VIP_IPV6 = "1248:4003:10bb:6a01:83b9:6360:c66d:2"
VIP_IPV4_ENV = "IPvsVIPForIPv4"
VIP_IPV6_ENV = "IPvsVIPForIPv6"

LVSCARE_POD_NAME = "reg-lvscare"
LVSCARE_IMAGE = "sealerio/lvscare:v1.1.3-beta.8"
STATIC_POD_DIR = "/etc/kubernetes/manifests"

HEALTH_PATH = "/"


def join_host_port(host: str, port: int) -> str:
    """Render ``host:port``, bracketing IPv6 addresses."""
    host = normalize(host)
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def get_registry_vip(host_ips: list[str], cluster_env: dict[str, str]) -> str:
    """Virtual IP the registry domain resolves to in HA mode.

    Defaults by the address family of the first cluster host and can be
    overridden from the cluster environment.
    """
    vip = DEFAULT_VIP
    if host_ips and ":" in normalize(host_ips[0]):
        vip = DEFAULT_VIP_IPV6
    if cluster_env.get(VIP_IPV4_ENV):
        vip = cluster_env[VIP_IPV4_ENV]
    if cluster_env.get(VIP_IPV6_ENV):
        vip = cluster_env[VIP_IPV6_ENV]
    return normalize(vip)


def real_servers(registry_hosts: list[str], port: int) -> list[str]:
    """Backend endpoints, sorted so every node programs the same rule."""
    return [join_host_port(h, port) for h in sorted(normalize(h) for h in registry_hosts)]


def health_scheme(insecure: bool) -> str:
    return "http" if insecure else "https"


def ipvs_cmd(vs: str, rs: list[str], scheme: str, health_path: str = HEALTH_PATH) -> str:
    """One-shot command programming the IPVS virtual server."""
    servers = " ".join(f"--rs {endpoint}" for endpoint in rs)
    return (
        f"seautil ipvs --vs {vs} {servers} --health-path {health_path} "
        f"--health-schem {scheme} --run-once"
    )


def lvscare_static_pod(
    name: str, vs: str, rs: list[str], image: str, scheme: str, health_path: str = HEALTH_PATH
) -> str:
    """Render the lvscare static pod that keeps the IPVS rule healthy."""
    args = ["care", "--vs", vs, "--health-path", health_path, "--health-schem", scheme]
    for endpoint in rs:
        args += ["--rs", endpoint]

    pod = {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": name, "namespace": "kube-system"},
        "spec": {
            "containers": [
                {
                    "args": args,
                    "command": ["/usr/bin/lvscare"],
                    "image": image,
                    "imagePullPolicy": "IfNotPresent",
                    "name": "main",
                    "securityContext": {"privileged": True},
                    "volumeMounts": [
                        {"mountPath": "/lib/modules", "name": "lib-modules", "readOnly": True}
                    ],
                }
            ],
            "hostNetwork": True,
            "volumes": [{"hostPath": {"path": "/lib/modules", "type": ""}, "name": "lib-modules"}],
        },
    }
    return yaml.safe_dump(pod, default_flow_style=False, sort_keys=False)


def static_pod_cmd(manifest: str, file_name: str) -> str:
    """Command writing a static pod manifest into the kubelet manifest directory."""
    return (
        f"mkdir -p {STATIC_POD_DIR} && cat > {STATIC_POD_DIR}/{file_name} << 'KUBEFLEET_EOF'\n"
        f"{manifest}KUBEFLEET_EOF"
    )
