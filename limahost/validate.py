"""Validation of a filled-in instance configuration."""

from __future__ import annotations

import getpass
import json
import logging
import os
import posixpath
import re
import stat
import sys
from typing import Optional

from .config import (
    AARCH64,
    NINEP,
    PROBE_MODE_READINESS,
    PROVISION_MODE_SYSTEM,
    PROVISION_MODE_USER,
    REVSSHFS,
    RISCV64,
    TCP,
    X8664,
    File,
    LimaYAML,
)
from .defaults import IPV4_ZERO
from .localpath import expand

__all__ = [
    "ValidationError",
    "ram_in_bytes",
    "validate_port",
    "validate",
    "validate_network",
]

_log = logging.getLogger(__name__)

_ARCHES = (X8664, AARCH64, RISCV64)
_SYSTEM_PATHS = frozenset(
    ["/", "/bin", "/dev", "/etc", "/home", "/opt", "/sbin", "/tmp", "/usr", "/var"]
)
_UNIX_PATH_MAX = 104 if sys.platform == "darwin" else 108
_SLIRP_NIC_NAME = "user"

_SIZE_RE = re.compile(r"^(\d+(\.\d+)*) ?([kKmMgGtTpP])?[iI]?[bB]?$")
_BINARY_UNITS = {
    "k": 1024,
    "m": 1024**2,
    "g": 1024**3,
    "t": 1024**4,
    "p": 1024**5,
}

_DIGEST_RE = re.compile(r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-zA-Z0-9=_-]+$")
_DIGEST_HEX_LEN = {"sha256": 64, "sha384": 96, "sha512": 128}
_HEX_RE = re.compile(r"^[a-f0-9]+$")


class ValidationError(ValueError):
    """Raised when a configuration is invalid."""


def _q(s: object) -> str:
    return json.dumps("" if s is None else str(s))


def _goos() -> str:
    if sys.platform == "win32":
        return "windows"
    return re.sub(r"\d+$", "", sys.platform)


def ram_in_bytes(size: str) -> int:
    """Parse a human-readable size such as ``4GiB`` using binary (1024) units."""
    m = _SIZE_RE.match(size or "")
    if m is None:
        raise ValueError(f"invalid size: '{size}'")
    try:
        value = float(m.group(1))
    except ValueError as e:
        raise ValueError(f"invalid size: '{size}'") from e
    prefix = (m.group(3) or "").lower()
    value *= _BINARY_UNITS.get(prefix, 1)
    return int(value)


def _validate_digest(digest: str) -> None:
    i = digest.find(":")
    if i <= 0 or i + 1 == len(digest):
        raise ValueError("invalid checksum digest format")
    algorithm, encoded = digest[:i], digest[i + 1:]
    size = _DIGEST_HEX_LEN.get(algorithm)
    if size is None:
        if not _DIGEST_RE.match(digest):
            raise ValueError("invalid checksum digest format")
        raise ValueError("unsupported digest algorithm")
    if len(encoded) != size:
        raise ValueError("invalid checksum digest length")
    if not _HEX_RE.match(encoded):
        raise ValueError("invalid checksum digest format")


def _validate_file_object(f: File, field_name: str) -> None:
    if "://" not in f.location:
        try:
            expand(f.location)
        except (ValueError, RuntimeError) as e:
            raise ValidationError(
                f"field `{field_name}.location` refers to an invalid local file path: "
                f"{_q(f.location)}: {e}"
            ) from e
    if f.arch not in _ARCHES:
        raise ValidationError(
            f"field `arch` must be {_q(X8664)}, {_q(AARCH64)}, or {_q(RISCV64)}; got {_q(f.arch)}"
        )
    if f.digest:
        algorithm = f.digest.split(":", 1)[0] if ":" in f.digest else ""
        if algorithm not in _DIGEST_HEX_LEN:
            raise ValidationError(
                f"field `{field_name}.digest` refers to an unavailable digest algorithm"
            )
        try:
            _validate_digest(f.digest)
        except ValueError as e:
            raise ValidationError(
                f"field `{field_name}.digest` is invalid: {f.digest}: {e}"
            ) from e


def validate_port(field: str, port: int) -> None:
    """Raise :class:`ValidationError` unless ``port`` is a usable TCP port other than 22."""
    if port < 0:
        raise ValidationError(f"field `{field}` must be > 0")
    if port == 0:
        raise ValidationError(f"field `{field}` must be set")
    if port == 22:
        raise ValidationError(f"field `{field}` must not be 22")
    if port > 65535:
        raise ValidationError(f"field `{field}` must be < 65536")


def _username() -> str:
    try:
        return getpass.getuser()
    except (OSError, KeyError) as e:
        raise ValidationError(f"internal error (not an error of YAML): {e}") from e


def validate(y: LimaYAML, warn: bool) -> None:
    """Check a filled-in configuration; raise :class:`ValidationError` on the first problem."""
    if y.arch not in _ARCHES:
        raise ValidationError(
            f"field `arch` must be {_q(X8664)}, {_q(AARCH64)}, or {_q(RISCV64)}; got {_q(y.arch)}"
        )

    if not y.images:
        raise ValidationError("field `images` must be set")
    for i, img in enumerate(y.images):
        _validate_file_object(img, f"images[{i}]")
        if img.kernel is not None:
            _validate_file_object(img.kernel, f"images[{i}].kernel")
            if img.kernel.arch != y.arch:
                raise ValidationError(
                    f"images[{i}].kernel has unexpected architecture {_q(img.kernel.arch)}, "
                    f"must be {_q(y.arch)}"
                )
        elif img.arch == RISCV64:
            raise ValidationError('riscv64 needs the kernel (e.g., "uboot.elf") to be specified')
        if img.initrd is not None:
            _validate_file_object(img.initrd, f"images[{i}].initrd")
            if img.kernel is None:
                raise ValidationError("initrd requires the kernel to be specified")
            if img.initrd.arch != y.arch:
                raise ValidationError(
                    f"images[{i}].initrd has unexpected architecture {_q(img.initrd.arch)}, "
                    f"must be {_q(y.arch)}"
                )

    for arch in y.cpu_type:
        if arch not in _ARCHES:
            raise ValidationError(f"field `cpuType` uses unsupported arch {_q(arch)}")

    if not y.cpus:
        raise ValidationError("field `cpus` must be set")

    try:
        ram_in_bytes(y.memory or "")
    except ValueError as e:
        raise ValidationError(f"field `memory` has an invalid value: {e}") from e
    try:
        ram_in_bytes(y.disk or "")
    except ValueError as e:
        raise ValidationError(f"field `memory` has an invalid value: {e}") from e

    # The home directory reserved inside the guest.
    reserved_home = f"/home/{_username()}.linux"

    for i, mount in enumerate(y.mounts):
        if not os.path.isabs(mount.location) and not mount.location.startswith("~"):
            raise ValidationError(
                f"field `mounts[{i}].location` must be an absolute path, got {_q(mount.location)}"
            )
        try:
            loc = expand(mount.location)
        except (ValueError, RuntimeError) as e:
            raise ValidationError(
                f"field `mounts[{i}].location` refers to an unexpandable path: "
                f"{_q(mount.location)}: {e}"
            ) from e
        if loc in _SYSTEM_PATHS:
            raise ValidationError(
                f"field `mounts[{i}].location` must not be a system path such as /etc or /usr"
            )
        if loc == reserved_home:
            raise ValidationError(f"field `mounts[{i}].location` is internally reserved")
        try:
            st = os.stat(loc)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise ValidationError(
                f"field `mounts[{i}].location` refers to an inaccessible path: "
                f"{_q(mount.location)}: {e}"
            ) from e
        else:
            if not stat.S_ISDIR(st.st_mode):
                raise ValidationError(
                    f"field `mounts[{i}].location` refers to a non-directory path: "
                    f"{_q(mount.location)}"
                )
        try:
            ram_in_bytes(mount.nine_p.msize or "")
        except ValueError as e:
            raise ValidationError(f"field `msize` has an invalid value: {e}") from e

    if y.ssh.local_port:
        validate_port("ssh.localPort", y.ssh.local_port)

    if y.mount_type not in (REVSSHFS, NINEP):
        raise ValidationError(
            f"field `mountType` must be {_q(REVSSHFS)} or {_q(NINEP)} , got {_q(y.mount_type)}"
        )

    for i, p in enumerate(y.provision):
        if p.mode not in (PROVISION_MODE_SYSTEM, PROVISION_MODE_USER):
            raise ValidationError(
                f"field `provision[{i}].mode` must be either "
                f"{_q(PROVISION_MODE_SYSTEM)} or {_q(PROVISION_MODE_USER)}"
            )

    needs_archives = bool(y.containerd.user) or bool(y.containerd.system)
    if needs_archives and not y.containerd.archives:
        raise ValidationError("field `containerd.archives` must be provided")

    for i, probe in enumerate(y.probes):
        if probe.mode != PROBE_MODE_READINESS:
            raise ValidationError(
                f"field `probe[{i}].mode` can only be {_q(PROBE_MODE_READINESS)}"
            )

    for i, rule in enumerate(y.port_forwards):
        _validate_port_forward(f"portForwards[{i}]", rule)

    if y.host_resolver.enabled and y.dns:
        raise ValidationError(
            "field `dns` must be empty when field `HostResolver.Enabled` is true"
        )

    validate_network(y, warn)


def _validate_port_forward(field: str, rule) -> None:
    if rule.guest_ip_must_be_zero and rule.guest_ip != IPV4_ZERO:
        raise ValidationError(
            f"field `{field}.guestIPMustBeZero` can only be true when field "
            f"`{field}.guestIP` is 0.0.0.0"
        )
    if rule.guest_port != 0:
        if rule.guest_socket:
            raise ValidationError(
                f"field `{field}.guestPort` must be 0 when field `{field}.guestSocket` is set"
            )
        if rule.guest_port != rule.guest_port_range[0]:
            raise ValidationError(
                f"field `{field}.guestPort` must match field `{field}.guestPortRange[0]`"
            )
        validate_port(f"{field}.guestPort", rule.guest_port)
    if rule.host_port != 0:
        if rule.host_socket:
            raise ValidationError(
                f"field `{field}.hostPort` must be 0 when field `{field}.hostSocket` is set"
            )
        if rule.host_port != rule.host_port_range[0]:
            raise ValidationError(
                f"field `{field}.hostPort` must match field `{field}.hostPortRange[0]`"
            )
        validate_port(f"{field}.hostPort", rule.host_port)
    for j in range(2):
        validate_port(f"{field}.guestPortRange[{j}]", rule.guest_port_range[j])
        validate_port(f"{field}.hostPortRange[{j}]", rule.host_port_range[j])
    g0, g1 = rule.guest_port_range
    h0, h1 = rule.host_port_range
    if g0 > g1:
        raise ValidationError(
            f"field `{field}.guestPortRange[1]` must be greater than or equal to "
            f"field `{field}.guestPortRange[0]`"
        )
    if h0 > h1:
        raise ValidationError(
            f"field `{field}.hostPortRange[1]` must be greater than or equal to "
            f"field `{field}.hostPortRange[0]`"
        )
    if g1 - g0 != h1 - h0:
        raise ValidationError(
            f"field `{field}.hostPortRange` must specify the same number of ports as "
            f"field `{field}.guestPortRange`"
        )
    if rule.guest_socket:
        if not posixpath.isabs(rule.guest_socket):
            raise ValidationError(f"field `{field}.guestSocket` must be an absolute path")
        if not rule.host_socket and h1 - h0 > 0:
            raise ValidationError(
                f"field `{field}.guestSocket` can only be mapped to a single port or socket. "
                "not a range"
            )
    if rule.host_socket:
        if not os.path.isabs(rule.host_socket):
            raise ValidationError(
                f"field `{field}.hostSocket` must be an absolute path, but is "
                f"{_q(rule.host_socket)}"
            )
        if not rule.guest_socket and g1 - g0 > 0:
            raise ValidationError(
                f"field `{field}.hostSocket` can only be mapped from a single port or socket. "
                "not a range"
            )
    if len(rule.host_socket) >= _UNIX_PATH_MAX:
        raise ValidationError(
            f"field `{field}.hostSocket` must be less than UNIX_PATH_MAX={_UNIX_PATH_MAX} "
            f"characters, but is {len(rule.host_socket)}"
        )
    if rule.proto != TCP:
        raise ValidationError(f"field `{field}.proto` must be {_q(TCP)}")
    if rule.reverse and (not rule.guest_socket or not rule.host_socket):
        raise ValidationError(f"field `{field}.reverse` must be false")


def _parse_mac(s: str) -> bytes:
    if len(s) < 14:
        raise ValueError(f"address {s}: invalid MAC address")
    if s[2] in ":-":
        sep = s[2]
        groups = s.split(sep)
        if any(len(g) != 2 for g in groups):
            raise ValueError(f"address {s}: invalid MAC address")
    elif s[4] == ".":
        parts = s.split(".")
        if any(len(p) != 4 for p in parts):
            raise ValueError(f"address {s}: invalid MAC address")
        groups = [p[k:k + 2] for p in parts for k in (0, 2)]
    else:
        raise ValueError(f"address {s}: invalid MAC address")
    if len(groups) not in (6, 8, 20):
        raise ValueError(f"address {s}: invalid MAC address")
    try:
        return bytes(int(g, 16) for g in groups if re.fullmatch(r"[0-9a-fA-F]{2}", g) or _bad(s))
    except ValueError as e:
        raise ValueError(f"address {s}: invalid MAC address") from e


def _bad(s: str) -> bool:
    raise ValueError(f"address {s}: invalid MAC address")


def _validate_vnl(field: str, vnl: str, switch_port: int, warn: bool) -> None:
    if "://" not in vnl or vnl.startswith("vde://"):
        vde_switch = vnl[len("vde://"):] if vnl.startswith("vde://") else vnl
        try:
            st = os.stat(vde_switch)
        except OSError as e:
            # Negligible while the instance is stopped.
            _log.debug("field `%s.vnl` %r failed stat: %s", field, vde_switch, e)
            return
        if stat.S_ISDIR(st.st_mode):
            ctl_socket = os.path.join(vde_switch, "ctl")
            try:
                ctl = os.stat(ctl_socket)
            except OSError:
                ctl = None
            if ctl is not None and not stat.S_ISSOCK(ctl.st_mode):
                raise ValidationError(
                    f"field `{field}.vnl` file {_q(ctl_socket)} is not a UNIX socket"
                )
            if switch_port == 65535:
                raise ValidationError(
                    f"field `{field}.vnl` points to a non-PTP switch, so the port number "
                    "must not be 65535"
                )
        else:
            if not stat.S_ISSOCK(st.st_mode):
                raise ValidationError(
                    f"field `{field}.vnl` {_q(vde_switch)} is not a directory nor a UNIX socket"
                )
            if switch_port != 65535:
                raise ValidationError(
                    f"field `{field}.vnl` points to a PTP (switchless) socket {_q(vde_switch)}, "
                    f"so the port number has to be 65535 (got {switch_port})"
                )
    elif _goos() != "linux" and warn:
        goos = _goos()
        _log.warning(
            "field `%s.vnl` is unlikely to work for %s (unless libvdeplug4 has been "
            "ported to %s and is installed)", field, goos, goos,
        )


def validate_network(y: LimaYAML, warn: bool) -> None:
    """Check the ``networks`` section (and the deprecated ``network.vde``)."""
    if y.network.vde:
        if y.network.migrated:
            if warn:
                _log.warning("field `network.VDE` is deprecated; please use `networks` instead")
        else:
            raise ValidationError(
                "you cannot use deprecated field `network.VDE` together with "
                "replacement field `networks`"
            )
    seen: dict[str, int] = {}
    for i, nw in enumerate(y.networks):
        field = f"networks[{i}]"
        if nw.lima:
            if _goos() != "darwin":
                raise ValidationError(f"field `{field}.lima` is only supported on macOS right now")
            if nw.vnl:
                raise ValidationError(
                    f"field `{field}.lima` and field `{field}.vnl` are mutually exclusive"
                )
            if nw.switch_port != 0:
                raise ValidationError(
                    f"field `{field}.switchPort` cannot be used with field `{field}.lima`"
                )
        else:
            if not nw.vnl:
                raise ValidationError(f"field `{field}.lima` or field `{field}.vnl` must be set")
            _validate_vnl(field, nw.vnl, nw.switch_port, warn)
        if nw.mac_address:
            try:
                hw = _parse_mac(nw.mac_address)
            except ValueError as e:
                raise ValidationError(f"field `vmnet.mac` invalid: {e}") from e
            if len(hw) != 6:
                raise ValidationError(
                    f"field `{field}.macAddress` must be a 48 bit (6 bytes) MAC address; "
                    f"actual length of {_q(nw.mac_address)} is {len(hw)} bytes"
                )
        iface_len = len(nw.interface.encode())
        if iface_len >= 16:
            raise ValidationError(
                f"field `{field}.interface` must be less than 16 bytes, but is "
                f"{iface_len} bytes: {_q(nw.interface)}"
            )
        if any(c in nw.interface for c in " \t\n/"):
            raise ValidationError(
                f"field `{field}.interface` must not contain whitespace or slashes"
            )
        if nw.interface == _SLIRP_NIC_NAME:
            raise ValidationError(
                f"field `{field}.interface` must not be set to {_q(_SLIRP_NIC_NAME)} "
                "because it is reserved for slirp"
            )
        prev: Optional[int] = seen.get(nw.interface)
        if prev is not None:
            raise ValidationError(
                f"field `{field}.interface` value {_q(nw.interface)} has already been used "
                f"by field `networks[{prev}].interface`"
            )
        seen[nw.interface] = i