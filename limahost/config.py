"""Instance configuration model and its YAML mapping."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field, fields, is_dataclass
from typing import Any, Optional, Union

import yaml

IP = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

X8664 = "x86_64"
AARCH64 = "aarch64"
RISCV64 = "riscv64"

REVSSHFS = "reverse-sshfs"
NINEP = "9p"

SFTP_DRIVER_BUILTIN = "builtin"
SFTP_DRIVER_OPENSSH_SFTP_SERVER = "openssh-sftp-server"

PROVISION_MODE_SYSTEM = "system"
PROVISION_MODE_USER = "user"

PROBE_MODE_READINESS = "readiness"

TCP = "tcp"


def _f(key: str, kind: Any, default: Any = None, *, factory: Any = None,
       omitempty: bool = True, pointer: bool = False) -> Any:
    meta = {"key": key, "kind": kind, "omitempty": omitempty, "pointer": pointer}
    if factory is not None:
        return field(default_factory=factory, metadata=meta)
    return field(default=default, metadata=meta)


def _p(key: str, kind: str) -> Any:
    """An optional scalar: omitted only when None."""
    return _f(key, kind, None, pointer=True)


@dataclass
class File:
    location: str = _f("location", "str", "", omitempty=False)
    arch: str = _f("arch", "str", "")
    digest: str = _f("digest", "str", "")


@dataclass
class Kernel(File):
    cmdline: str = _f("cmdline", "str", "")


@dataclass
class Image(File):
    kernel: Optional[Kernel] = _f("kernel", Kernel, None, pointer=True)
    initrd: Optional[File] = _f("initrd", File, None, pointer=True)


@dataclass
class SSHFS:
    cache: Optional[bool] = _p("cache", "bool")
    follow_symlinks: Optional[bool] = _p("followSymlinks", "bool")
    sftp_driver: Optional[str] = _p("sftpDriver", "str")


@dataclass
class NineP:
    security_model: Optional[str] = _p("securityModel", "str")
    protocol_version: Optional[str] = _p("protocolVersion", "str")
    msize: Optional[str] = _p("msize", "str")
    cache: Optional[str] = _p("cache", "str")


@dataclass
class Mount:
    location: str = _f("location", "str", "", omitempty=False)
    mount_point: str = _f("mountPoint", "str", "")
    writable: Optional[bool] = _p("writable", "bool")
    sshfs: SSHFS = _f("sshfs", SSHFS, factory=SSHFS)
    nine_p: NineP = _f("9p", NineP, factory=NineP)


@dataclass
class SSH:
    local_port: Optional[int] = _p("localPort", "int")
    load_dot_ssh_pub_keys: Optional[bool] = _p("loadDotSSHPubKeys", "bool")
    forward_agent: Optional[bool] = _p("forwardAgent", "bool")
    forward_x11: Optional[bool] = _p("forwardX11", "bool")
    forward_x11_trusted: Optional[bool] = _p("forwardX11Trusted", "bool")


@dataclass
class Firmware:
    legacy_bios: Optional[bool] = _p("legacyBIOS", "bool")


@dataclass
class Video:
    display: Optional[str] = _p("display", "str")


@dataclass
class Provision:
    mode: str = _f("mode", "str", "", omitempty=False)
    script: str = _f("script", "str", "", omitempty=False)


@dataclass
class Containerd:
    system: Optional[bool] = _p("system", "bool")
    user: Optional[bool] = _p("user", "bool")
    archives: list[File] = _f("archives", ("list", File), factory=list)


@dataclass
class Probe:
    mode: str = _f("mode", "str", "", omitempty=False)
    description: str = _f("description", "str", "", omitempty=False)
    script: str = _f("script", "str", "", omitempty=False)
    hint: str = _f("hint", "str", "", omitempty=False)


@dataclass
class PortForward:
    guest_ip_must_be_zero: bool = _f("guestIPMustBeZero", "bool", False)
    guest_ip: Optional[IP] = _f("guestIP", "ip", None)
    guest_port: int = _f("guestPort", "int", 0)
    guest_port_range: tuple[int, int] = _f("guestPortRange", "range", (0, 0))
    guest_socket: str = _f("guestSocket", "str", "")
    host_ip: Optional[IP] = _f("hostIP", "ip", None)
    host_port: int = _f("hostPort", "int", 0)
    host_port_range: tuple[int, int] = _f("hostPortRange", "range", (0, 0))
    host_socket: str = _f("hostSocket", "str", "")
    proto: str = _f("proto", "str", "")
    reverse: bool = _f("reverse", "bool", False)
    ignore: bool = _f("ignore", "bool", False)


@dataclass
class Network:
    lima: str = _f("lima", "str", "")
    vnl: str = _f("vnl", "str", "")
    switch_port: int = _f("switchPort", "uint16", 0)
    mac_address: str = _f("macAddress", "str", "")
    interface: str = _f("interface", "str", "")


@dataclass
class HostResolver:
    enabled: Optional[bool] = _p("enabled", "bool")
    ipv6: Optional[bool] = _p("ipv6", "bool")
    hosts: dict[str, str] = _f("hosts", "str_map", factory=dict)


@dataclass
class CACertificates:
    remove_defaults: Optional[bool] = _p("removeDefaults", "bool")
    files: list[str] = _f("files", ("list", "str"), factory=list)
    certs: list[str] = _f("certs", ("list", "str"), factory=list)


@dataclass
class VDEDeprecated:
    vnl: str = _f("vnl", "str", "")
    switch_port: int = _f("switchPort", "uint16", 0)
    mac_address: str = _f("macAddress", "str", "")
    name: str = _f("name", "str", "")


@dataclass
class NetworkDeprecated:
    vde: list[VDEDeprecated] = _f("vde", ("list", VDEDeprecated), factory=list)
    # Set once the deprecated entries have been copied into ``networks``.
    migrated: bool = field(default=False, compare=False, repr=False)


@dataclass
class LimaYAML:
    arch: Optional[str] = _p("arch", "str")
    images: list[Image] = _f("images", ("list", Image), factory=list, omitempty=False)
    cpu_type: dict[str, str] = _f("cpuType", "str_map", factory=dict)
    cpus: Optional[int] = _p("cpus", "int")
    memory: Optional[str] = _p("memory", "str")
    disk: Optional[str] = _p("disk", "str")
    mounts: list[Mount] = _f("mounts", ("list", Mount), factory=list)
    mount_type: Optional[str] = _p("mountType", "str")
    ssh: SSH = _f("ssh", SSH, factory=SSH)
    firmware: Firmware = _f("firmware", Firmware, factory=Firmware)
    video: Video = _f("video", Video, factory=Video)
    provision: list[Provision] = _f("provision", ("list", Provision), factory=list)
    containerd: Containerd = _f("containerd", Containerd, factory=Containerd)
    probes: list[Probe] = _f("probes", ("list", Probe), factory=list)
    port_forwards: list[PortForward] = _f("portForwards", ("list", PortForward), factory=list)
    message: str = _f("message", "str", "")
    networks: list[Network] = _f("networks", ("list", Network), factory=list)
    network: NetworkDeprecated = _f("network", NetworkDeprecated, factory=NetworkDeprecated)
    env: dict[str, str] = _f("env", "str_map", factory=dict)
    dns: list[IP] = _f("dns", ("list", "ip"), factory=list)
    host_resolver: HostResolver = _f("hostResolver", HostResolver, factory=HostResolver)
    use_host_resolver: Optional[bool] = _p("useHostResolver", "bool")
    propagate_proxy_env: Optional[bool] = _p("propagateProxyEnv", "bool")
    ca_certificates: CACertificates = _f("caCerts", CACertificates, factory=CACertificates)

    @classmethod
    def from_dict(cls, data: Any) -> "LimaYAML":
        """Build a configuration from a mapping using the YAML key names."""
        return _load(cls, data, "")

    def to_dict(self) -> dict[str, Any]:
        """Return the mapping form, omitting empty optional fields."""
        return _dump(self)


def parse_yaml(text: Union[str, bytes]) -> LimaYAML:
    """Parse a YAML document into a :class:`LimaYAML`; an empty document gives defaults."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ValueError(f"invalid YAML: {e}") from e
    if data is None:
        return LimaYAML()
    return LimaYAML.from_dict(data)


def _keyed_fields(cls_or_obj: Any):
    return [f for f in fields(cls_or_obj) if "key" in f.metadata]


def _zero(kind: Any) -> Any:
    if isinstance(kind, tuple):
        return []
    if isinstance(kind, type):
        return kind()
    return {"str": "", "int": 0, "uint16": 0, "bool": False, "range": (0, 0),
            "str_map": {}, "ip": None}[kind]


def _text(value: Any, where: str) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    raise ValueError(f"{where}: expected a scalar, got {type(value).__name__}")


def _int(value: Any, where: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{where}: expected an integer, got {value!r}")
    return value


def _decode(kind: Any, value: Any, where: str) -> Any:
    if value is None:
        return _zero(kind)
    if isinstance(kind, tuple):
        if not isinstance(value, list):
            raise ValueError(f"{where}: expected a sequence")
        return [_decode(kind[1], v, f"{where}[{i}]") for i, v in enumerate(value)]
    if isinstance(kind, type):
        return _load(kind, value, where)
    if kind == "str":
        return _text(value, where)
    if kind == "int":
        return _int(value, where)
    if kind == "uint16":
        n = _int(value, where)
        if not 0 <= n <= 0xFFFF:
            raise ValueError(f"{where}: {n} out of range for uint16")
        return n
    if kind == "bool":
        if not isinstance(value, bool):
            raise ValueError(f"{where}: expected a boolean, got {value!r}")
        return value
    if kind == "ip":
        try:
            return ipaddress.ip_address(_text(value, where))
        except ValueError as e:
            raise ValueError(f"{where}: invalid IP address {value!r}") from e
    if kind == "range":
        if not isinstance(value, list) or len(value) > 2:
            raise ValueError(f"{where}: expected a sequence of at most two integers")
        nums = [_int(v, f"{where}[{i}]") for i, v in enumerate(value)] + [0, 0]
        return (nums[0], nums[1])
    if kind == "str_map":
        if not isinstance(value, dict):
            raise ValueError(f"{where}: expected a mapping")
        return {_text(k, where): _text(v, f"{where}.{k}") for k, v in value.items()}
    raise TypeError(f"unknown field kind {kind!r}")


def _load(cls: type, data: Any, where: str) -> Any:
    if not isinstance(data, dict):
        raise ValueError(f"{where or 'document'}: expected a mapping, got {type(data).__name__}")
    kwargs = {}
    for f in _keyed_fields(cls):
        key = f.metadata["key"]
        raw = data.get(key)
        if raw is None:
            continue
        kwargs[f.name] = _decode(f.metadata["kind"], raw, f"{where}.{key}" if where else key)
    return cls(**kwargs)


def _is_zero(value: Any) -> bool:
    if value is None:
        return True
    if is_dataclass(value):
        return all(_is_zero(getattr(value, f.name)) for f in _keyed_fields(value))
    if isinstance(value, (bool, int)):
        return not value
    if isinstance(value, tuple):
        return all(v == 0 for v in value)
    if isinstance(value, (str, list, dict)):
        return not value
    return False


def _encode(value: Any) -> Any:
    if value is None:
        return None
    if is_dataclass(value):
        return _dump(value)
    if isinstance(value, list):
        return [_encode(v) for v in value]
    if isinstance(value, tuple):
        return list(value)
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return str(value)
    return value


def _dump(obj: Any) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for f in _keyed_fields(obj):
        value = getattr(obj, f.name)
        if f.metadata["omitempty"]:
            if f.metadata["pointer"] and value is None:
                continue
            if not f.metadata["pointer"] and _is_zero(value):
                continue
        out[f.metadata["key"]] = _encode(value)
    return out