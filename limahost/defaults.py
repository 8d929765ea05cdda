"""Filling in default values of an instance configuration."""

from __future__ import annotations

import copy
import getpass
import hashlib
import ipaddress
import logging
import os
import platform
import re
import socket
import sys
from typing import Iterable, Optional, TypeVar

from .config import (
    AARCH64,
    NINEP,
    PROBE_MODE_READINESS,
    PROVISION_MODE_SYSTEM,
    REVSSHFS,
    RISCV64,
    TCP,
    X8664,
    File,
    LimaYAML,
    Mount,
    Network,
    PortForward,
)

__all__ = [
    "DEFAULT_9P_SECURITY_MODEL",
    "DEFAULT_9P_PROTOCOL_VERSION",
    "DEFAULT_9P_MSIZE",
    "DEFAULT_9P_CACHE_FOR_RO",
    "DEFAULT_9P_CACHE_FOR_RW",
    "IPV4_LOOPBACK1",
    "IPV4_ZERO",
    "NINEP",
    "default_containerd_archives",
    "mac_address",
    "fill_default",
    "fill_port_forward_defaults",
    "new_arch",
    "resolve_arch",
    "is_accel_os",
    "has_host_cpu",
    "has_max_cpu",
    "is_native_arch",
    "cname",
]

_log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_9P_SECURITY_MODEL = "mapped-xattr"
DEFAULT_9P_PROTOCOL_VERSION = "9p2000.L"
DEFAULT_9P_MSIZE = "128KiB"
DEFAULT_9P_CACHE_FOR_RO = "fscache"
DEFAULT_9P_CACHE_FOR_RW = "mmap"

IPV4_LOOPBACK1 = ipaddress.IPv4Address("127.0.0.1")
IPV4_ZERO = ipaddress.IPv4Address("0.0.0.0")

_SOCKET_DIR = "sock"
_NERDCTL_VERSION = "0.22.0"


# ---------------------------------------------------------------------------
# Host environment


def _goarch() -> str:
    machine = platform.machine().lower()
    return {
        "x86_64": "amd64",
        "amd64": "amd64",
        "aarch64": "arm64",
        "arm64": "arm64",
        "riscv64": "riscv64",
    }.get(machine, machine)


def _goos() -> str:
    plat = sys.platform
    if plat == "win32":
        return "windows"
    return re.sub(r"\d+$", "", plat)


def _machine_id() -> str:
    for path in ("/etc/machine-id", "/var/lib/dbus/machine-id"):
        try:
            with open(path, encoding="utf-8") as fh:
                value = fh.read().strip()
        except OSError:
            continue
        if value:
            return value
    return socket.gethostname()


def _lima_user() -> tuple[str, str]:
    try:
        name = getpass.getuser()
    except (OSError, KeyError):
        name = ""
    uid = str(os.getuid()) if hasattr(os, "getuid") else ""
    return name, uid


def _user_home() -> str:
    home = os.path.expanduser("~")
    return "" if home == "~" else home


def _lima_dir() -> str:
    lima_home = os.environ.get("LIMA_HOME", "")
    if lima_home:
        return os.path.abspath(lima_home)
    home = _user_home()
    return os.path.join(home, ".lima") if home else ""


# ---------------------------------------------------------------------------
# Minimal field templates: "{{.Name}}"

_ACTION = re.compile(r"\{\{(.*?)\}\}", re.S)
_FIELD = re.compile(r"\.(\w+)")


class _TemplateError(Exception):
    pass


class _TemplateParseError(_TemplateError):
    pass


def _render(text: str, data: dict[str, str]) -> str:
    if "{{" in _ACTION.sub("", text):
        raise _TemplateParseError("unclosed action")
    if any(not m.group(1).strip() for m in _ACTION.finditer(text)):
        raise _TemplateParseError("missing value for command")

    def replace(m: "re.Match[str]") -> str:
        action = m.group(1).strip()
        fm = _FIELD.fullmatch(action)
        if fm is None:
            raise _TemplateError(f"unsupported action {{{{{action}}}}}")
        return data.get(fm.group(1), "<no value>")

    return _ACTION.sub(replace, text)


def _expand_template(text: str, data: dict[str, str], what: str) -> str:
    try:
        return _render(text, data)
    except _TemplateParseError:
        return text
    except _TemplateError as e:
        _log.warning("Couldn't process %s %r as a template: %s", what, text, e)
        return text


# ---------------------------------------------------------------------------


def default_containerd_archives() -> list[File]:
    """Return the built-in containerd (nerdctl-full) archives."""

    def location(goarch: str) -> str:
        return (
            "https://github.com/containerd/nerdctl/releases/download/v"
            f"{_NERDCTL_VERSION}/nerdctl-full-{_NERDCTL_VERSION}-linux-{goarch}.tar.gz"
        )

    return [
        File(
            location=location("amd64"),
            arch=X8664,
            digest="sha256:2c891984eae000e76e47ae1e6be82c7c2732202bbfe9e1f9f66ceff44f4ec257",
        ),
        File(
            location=location("arm64"),
            arch=AARCH64,
            digest="sha256:939e438a29eee11ff85a808b1f504e8875d1fe9aa2174cff761fc5bfdd461194",
        ),
    ]


def mac_address(unique_id: str) -> str:
    """Derive a stable, locally administered MAC address for ``unique_id``."""
    sha = hashlib.sha256((_machine_id() + unique_id).encode()).digest()
    hw = bytes([0x52, 0x55, 0x55]) + sha[:3]
    return ":".join(f"{b:02x}" for b in hw)


def _pick(y_val: Optional[T], d_val: Optional[T], o_val: Optional[T]) -> Optional[T]:
    value = d_val if y_val is None else y_val
    if o_val is not None:
        value = o_val
    return value


def _copies(*lists: Iterable[T]) -> list[T]:
    return [copy.deepcopy(item) for lst in lists for item in lst]


def _unique(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def fill_default(y: LimaYAML, d: LimaYAML, o: LimaYAML, file_path: str) -> None:
    """Fill unset fields of ``y`` from ``d`` or built-ins, then override with ``o``.

    Maps are merged d, y, o; lists are concatenated o, y, d. Mounts and
    networks are combined in d, y, o order, merging entries with the same
    location or interface. DNS comes from the highest priority non-empty list.
    """
    y.arch = resolve_arch(_pick(y.arch, d.arch, o.arch))

    y.images = _copies(o.images, y.images, d.images)
    for img in y.images:
        if not img.arch:
            img.arch = y.arch
        if img.kernel is not None and not img.kernel.arch:
            img.kernel.arch = img.arch
        if img.initrd is not None and not img.initrd.arch:
            img.initrd.arch = img.arch

    cpu_type = {AARCH64: "cortex-a72", X8664: "qemu64", RISCV64: "rv64"}
    for arch in list(cpu_type):
        if is_native_arch(arch) and is_accel_os():
            if has_host_cpu():
                cpu_type[arch] = "host"
            elif has_max_cpu():
                cpu_type[arch] = "max"
    for source in (d.cpu_type, y.cpu_type, o.cpu_type):
        cpu_type.update({k: v for k, v in source.items() if v})
    y.cpu_type = cpu_type

    y.cpus = _pick(y.cpus, d.cpus, o.cpus) or 4
    y.memory = _pick(y.memory, d.memory, o.memory) or "4GiB"
    y.disk = _pick(y.disk, d.disk, o.disk) or "100GiB"
    y.video.display = _pick(y.video.display, d.video.display, o.video.display) or "none"

    legacy = _pick(y.firmware.legacy_bios, d.firmware.legacy_bios, o.firmware.legacy_bios)
    y.firmware.legacy_bios = False if legacy is None else legacy

    for attr, fallback in (
        ("local_port", 0),
        ("load_dot_ssh_pub_keys", True),
        ("forward_agent", False),
        ("forward_x11", False),
        ("forward_x11_trusted", False),
    ):
        value = _pick(getattr(y.ssh, attr), getattr(d.ssh, attr), getattr(o.ssh, attr))
        setattr(y.ssh, attr, fallback if value is None else value)

    hosts: dict[str, str] = {}
    for source in (d.host_resolver.hosts, y.host_resolver.hosts, o.host_resolver.hosts):
        for k, v in source.items():
            hosts[cname(k)] = v
    y.host_resolver.hosts = hosts

    y.provision = _copies(o.provision, y.provision, d.provision)
    for prov in y.provision:
        if not prov.mode:
            prov.mode = PROVISION_MODE_SYSTEM

    system = _pick(y.containerd.system, d.containerd.system, o.containerd.system)
    y.containerd.system = False if system is None else system
    user = _pick(y.containerd.user, d.containerd.user, o.containerd.user)
    y.containerd.user = True if user is None else user

    y.containerd.archives = _copies(o.containerd.archives, y.containerd.archives, d.containerd.archives)
    if not y.containerd.archives:
        y.containerd.archives = default_containerd_archives()
    for archive in y.containerd.archives:
        if not archive.arch:
            archive.arch = y.arch

    y.probes = _copies(o.probes, y.probes, d.probes)
    for i, probe in enumerate(y.probes):
        if not probe.mode:
            probe.mode = PROBE_MODE_READINESS
        if not probe.description:
            probe.description = f"user probe {i + 1}/{len(y.probes)}"

    y.port_forwards = _copies(o.port_forwards, y.port_forwards, d.port_forwards)
    inst_dir = os.path.dirname(file_path)
    for rule in y.port_forwards:
        fill_port_forward_defaults(rule, inst_dir)

    # The deprecated useHostResolver is ignored when hostResolver.enabled is set.
    for cfg in (y, d, o):
        if cfg.host_resolver.enabled is None:
            cfg.host_resolver.enabled = cfg.use_host_resolver
    enabled = _pick(y.host_resolver.enabled, d.host_resolver.enabled, o.host_resolver.enabled)
    y.host_resolver.enabled = True if enabled is None else enabled
    ipv6 = _pick(y.host_resolver.ipv6, d.host_resolver.ipv6, o.host_resolver.ipv6)
    y.host_resolver.ipv6 = False if ipv6 is None else ipv6

    proxy = _pick(y.propagate_proxy_env, d.propagate_proxy_env, o.propagate_proxy_env)
    y.propagate_proxy_env = True if proxy is None else proxy

    if y.network.vde and not y.networks:
        y.networks = [
            Network(
                interface=vde.name,
                mac_address=vde.mac_address,
                switch_port=vde.switch_port,
                vnl=vde.vnl,
            )
            for vde in y.network.vde
        ]
        y.network.migrated = True

    y.networks = _merge_networks(_copies(d.networks, y.networks, o.networks))
    for i, nw in enumerate(y.networks):
        if not nw.mac_address:
            nw.mac_address = mac_address(f"{file_path}#{i}")
        if not nw.interface:
            nw.interface = f"lima{i}"

    y.mounts = _merge_mounts(_copies(d.mounts, y.mounts, o.mounts))
    for mount in y.mounts:
        _fill_mount_defaults(mount)

    y.mount_type = _pick(y.mount_type, d.mount_type, o.mount_type) or REVSSHFS

    if not y.dns:
        y.dns = list(d.dns)
    if o.dns:
        y.dns = list(o.dns)

    env: dict[str, str] = {}
    for source in (d.env, y.env, o.env):
        env.update(source)
    y.env = env

    remove = _pick(
        y.ca_certificates.remove_defaults,
        d.ca_certificates.remove_defaults,
        o.ca_certificates.remove_defaults,
    )
    y.ca_certificates.remove_defaults = False if remove is None else remove
    y.ca_certificates.files = _unique(
        [*d.ca_certificates.files, *y.ca_certificates.files, *o.ca_certificates.files]
    )
    y.ca_certificates.certs = _unique(
        [*d.ca_certificates.certs, *y.ca_certificates.certs, *o.ca_certificates.certs]
    )


def _merge_networks(candidates: list[Network]) -> list[Network]:
    networks: list[Network] = []
    by_iface: dict[str, Network] = {}
    for nw in candidates:
        prev = by_iface.get(nw.interface)
        if prev is None:
            # Unnamed network definitions are never combined.
            if nw.interface:
                by_iface[nw.interface] = nw
            networks.append(nw)
            continue
        if nw.vnl:
            prev.vnl = nw.vnl
            prev.switch_port = nw.switch_port
            prev.lima = ""
        if nw.lima:
            if nw.vnl:
                _log.error(
                    "Network %r has both vnl=%r and lima=%r fields; ignoring vnl",
                    nw.interface, nw.vnl, nw.lima,
                )
            prev.lima = nw.lima
            prev.vnl = ""
            prev.switch_port = 0
        if nw.mac_address:
            prev.mac_address = nw.mac_address
    return networks


def _merge_mounts(candidates: list[Mount]) -> list[Mount]:
    mounts: list[Mount] = []
    by_location: dict[str, Mount] = {}
    for mount in candidates:
        prev = by_location.get(mount.location)
        if prev is None:
            by_location[mount.location] = mount
            mounts.append(mount)
            continue
        for sub, attr in (
            ("sshfs", "cache"),
            ("sshfs", "follow_symlinks"),
            ("sshfs", "sftp_driver"),
            ("nine_p", "security_model"),
            ("nine_p", "protocol_version"),
            ("nine_p", "msize"),
            ("nine_p", "cache"),
        ):
            value = getattr(getattr(mount, sub), attr)
            if value is not None:
                setattr(getattr(prev, sub), attr, value)
        if mount.writable is not None:
            prev.writable = mount.writable
        if mount.mount_point:
            prev.mount_point = mount.mount_point
    return mounts


def _fill_mount_defaults(mount: Mount) -> None:
    if mount.sshfs.cache is None:
        mount.sshfs.cache = True
    if mount.sshfs.follow_symlinks is None:
        mount.sshfs.follow_symlinks = False
    if mount.sshfs.sftp_driver is None:
        mount.sshfs.sftp_driver = ""
    if mount.nine_p.security_model is None:
        mount.nine_p.security_model = DEFAULT_9P_SECURITY_MODEL
    if mount.nine_p.protocol_version is None:
        mount.nine_p.protocol_version = DEFAULT_9P_PROTOCOL_VERSION
    if mount.nine_p.msize is None:
        mount.nine_p.msize = DEFAULT_9P_MSIZE
    if mount.writable is None:
        mount.writable = False
    if mount.nine_p.cache is None:
        mount.nine_p.cache = DEFAULT_9P_CACHE_FOR_RW if mount.writable else DEFAULT_9P_CACHE_FOR_RO
    if not mount.mount_point:
        mount.mount_point = mount.location


def fill_port_forward_defaults(rule: PortForward, inst_dir: str) -> None:
    """Fill unset fields of a port forwarding rule and expand socket templates."""
    if not rule.proto:
        rule.proto = TCP
    if rule.guest_ip is None:
        rule.guest_ip = IPV4_ZERO if rule.guest_ip_must_be_zero else IPV4_LOOPBACK1
    if rule.host_ip is None:
        rule.host_ip = IPV4_LOOPBACK1
    if rule.guest_port_range == (0, 0):
        if rule.guest_port == 0:
            rule.guest_port_range = (1, 65535)
        else:
            rule.guest_port_range = (rule.guest_port, rule.guest_port)
    if rule.host_port_range == (0, 0):
        if rule.host_port == 0:
            rule.host_port_range = tuple(rule.guest_port_range)
        else:
            rule.host_port_range = (rule.host_port, rule.host_port)
    if rule.guest_socket:
        user, uid = _lima_user()
        data = {"Home": f"/home/{user}.linux", "UID": uid, "User": user}
        rule.guest_socket = _expand_template(rule.guest_socket, data, "guestSocket")
    if rule.host_socket:
        user, uid = _lima_user()
        name = os.path.basename(inst_dir)
        data = {
            "Dir": inst_dir,
            "Home": _user_home(),
            "Name": name,
            "UID": uid,
            "User": user,
            "Instance": name,
            "LimaHome": _lima_dir(),
        }
        rule.host_socket = _expand_template(rule.host_socket, data, "hostSocket")
        if not os.path.isabs(rule.host_socket):
            rule.host_socket = os.path.join(inst_dir, _SOCKET_DIR, rule.host_socket)


def new_arch(arch: str) -> str:
    """Map a runtime architecture name (amd64, arm64, riscv64) to a configuration one."""
    mapped = {"amd64": X8664, "arm64": AARCH64, "riscv64": RISCV64}.get(arch)
    if mapped is None:
        _log.warning("Unknown arch: %s", arch)
        return arch
    return mapped


def resolve_arch(s: Optional[str]) -> str:
    """Return ``s``, or the host architecture when it is unset or ``default``."""
    if not s or s == "default":
        return new_arch(_goarch())
    return s


def is_accel_os() -> bool:
    """Whether the host OS has a hardware accelerator available."""
    return _goos() in ("darwin", "linux", "netbsd", "windows")


def has_host_cpu() -> bool:
    """Whether the ``host`` CPU model can be used."""
    return _goos() in ("darwin", "linux")


def has_max_cpu() -> bool:
    """Whether the ``max`` CPU model can be used."""
    return _goos() != "windows"


def is_native_arch(arch: str) -> bool:
    """Whether ``arch`` is the architecture of the host."""
    goarch = _goarch()
    return (
        (arch == X8664 and goarch == "amd64")
        or (arch == AARCH64 and goarch == "arm64")
        or (arch == RISCV64 and goarch == "riscv64")
    )


def cname(host: str) -> str:
    """Lower-case a host name and make it fully qualified."""
    host = host.lower()
    if not host.endswith("."):
        host += "."
    return host