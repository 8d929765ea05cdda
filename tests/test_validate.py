import ipaddress

import pytest

from limahost.config import (
    File,
    Image,
    LimaYAML,
    Mount,
    Network,
    PortForward,
    Provision,
)
from limahost.defaults import fill_default, fill_port_forward_defaults
from limahost.validate import (
    ValidationError,
    ram_in_bytes,
    validate,
    validate_network,
    validate_port,
)

DIGEST = "sha256:2c891984eae000e76e47ae1e6be82c7c2732202bbfe9e1f9f66ceff44f4ec257"


@pytest.fixture
def inst_dir(tmp_path):
    d = tmp_path / "instance"
    d.mkdir()
    return d


def _filled(inst_dir, **kwargs):
    y = LimaYAML(
        arch="x86_64",
        images=[Image(location="https://example.com/image.img", digest=DIGEST)],
        **kwargs,
    )
    fill_default(y, LimaYAML(), LimaYAML(), str(inst_dir / "lima.yaml"))
    return y


def test_valid_config_passes_and_is_unchanged(inst_dir):
    y = _filled(inst_dir)
    before = y.to_dict()
    validate(y, True)
    assert y.to_dict() == before


def test_ram_in_bytes_binary_units():
    assert ram_in_bytes("1KiB") == 1024
    assert ram_in_bytes("1k") == ram_in_bytes("1KiB")
    assert ram_in_bytes("4GiB") == 4 * ram_in_bytes("1GiB")
    assert ram_in_bytes("512") == 512


@pytest.mark.parametrize("size", ["", "abc", "1.2.3GiB", "-1GiB", "4XB"])
def test_ram_in_bytes_invalid(size):
    with pytest.raises(ValueError):
        ram_in_bytes(size)


@pytest.mark.parametrize(
    "port,message",
    [
        (-1, "field `p` must be > 0"),
        (0, "field `p` must be set"),
        (22, "field `p` must not be 22"),
        (65536, "field `p` must be < 65536"),
    ],
)
def test_validate_port_errors(port, message):
    with pytest.raises(ValidationError) as exc:
        validate_port("p", port)
    assert str(exc.value) == message


def test_bad_arch(inst_dir):
    y = _filled(inst_dir)
    y.arch = "mips"
    with pytest.raises(ValidationError, match="field `arch` must be"):
        validate(y, False)


def test_images_required(inst_dir):
    y = _filled(inst_dir)
    y.images = []
    with pytest.raises(ValidationError, match="field `images` must be set"):
        validate(y, False)


def test_unavailable_digest(inst_dir):
    y = _filled(inst_dir)
    y.images[0].digest = "md5:abcdef"
    with pytest.raises(ValidationError, match="unavailable digest algorithm"):
        validate(y, False)


def test_malformed_digest(inst_dir):
    y = _filled(inst_dir)
    y.images[0].digest = "sha256:xyz"
    with pytest.raises(ValidationError, match=r"images\[0\].digest` is invalid"):
        validate(y, False)


def test_initrd_requires_kernel(inst_dir):
    y = _filled(inst_dir)
    y.images[0].initrd = File(location="https://example.com/initrd", arch="x86_64")
    with pytest.raises(ValidationError, match="initrd requires the kernel"):
        validate(y, False)


def test_invalid_memory(inst_dir):
    y = _filled(inst_dir)
    y.memory = "lots"
    with pytest.raises(ValidationError, match="field `memory` has an invalid value"):
        validate(y, False)


def test_mount_must_be_absolute(inst_dir):
    y = _filled(inst_dir, mounts=[Mount(location="relative/dir")])
    with pytest.raises(ValidationError, match="must be an absolute path"):
        validate(y, False)


def test_mount_system_path(inst_dir):
    y = _filled(inst_dir, mounts=[Mount(location="/etc")])
    with pytest.raises(ValidationError, match="must not be a system path"):
        validate(y, False)


def test_mount_non_directory(inst_dir):
    f = inst_dir / "plain.txt"
    f.write_text("x")
    y = _filled(inst_dir, mounts=[Mount(location=str(f))])
    with pytest.raises(ValidationError, match="non-directory path"):
        validate(y, False)


def test_mount_directory_is_valid(inst_dir):
    y = _filled(inst_dir, mounts=[Mount(location=str(inst_dir))])
    validate(y, False)
    assert y.mounts[0].mount_point == str(inst_dir)


def test_bad_mount_type(inst_dir):
    y = _filled(inst_dir)
    y.mount_type = "nfs"
    with pytest.raises(ValidationError, match="field `mountType` must be"):
        validate(y, False)


def test_bad_provision_mode(inst_dir):
    y = _filled(inst_dir, provision=[Provision(mode="root", script="#!/bin/true")])
    with pytest.raises(ValidationError, match=r"provision\[0\].mode"):
        validate(y, False)


def test_containerd_needs_archives(inst_dir):
    y = _filled(inst_dir)
    y.containerd.archives = []
    with pytest.raises(ValidationError, match="containerd.archives"):
        validate(y, False)


def _with_rule(inst_dir, rule):
    y = _filled(inst_dir)
    fill_port_forward_defaults(rule, str(inst_dir))
    y.port_forwards.append(rule)
    return y


def test_port_forward_guest_port_22(inst_dir):
    y = _with_rule(inst_dir, PortForward(guest_port=22))
    with pytest.raises(ValidationError) as exc:
        validate(y, False)
    assert str(exc.value) == "field `portForwards[0].guestPort` must not be 22"


def test_port_forward_reverse_needs_sockets(inst_dir):
    y = _with_rule(inst_dir, PortForward(reverse=True))
    with pytest.raises(ValidationError) as exc:
        validate(y, False)
    assert str(exc.value) == "field `portForwards[0].reverse` must be false"


def test_port_forward_proto(inst_dir):
    y = _with_rule(inst_dir, PortForward(proto="udp"))
    with pytest.raises(ValidationError, match='proto` must be "tcp"'):
        validate(y, False)


def test_port_forward_guest_ip_must_be_zero(inst_dir):
    rule = PortForward(guest_ip=ipaddress.ip_address("127.0.0.1"), guest_ip_must_be_zero=True)
    y = _with_rule(inst_dir, rule)
    with pytest.raises(ValidationError, match="guestIPMustBeZero"):
        validate(y, False)


def test_port_forward_range_mismatch(inst_dir):
    rule = PortForward(guest_port_range=(100, 200), host_port_range=(100, 150))
    y = _with_rule(inst_dir, rule)
    with pytest.raises(ValidationError, match="same number of ports"):
        validate(y, False)


def test_dns_with_host_resolver(inst_dir):
    y = _filled(inst_dir)
    y.dns = [ipaddress.ip_address("1.1.1.1")]
    with pytest.raises(ValidationError, match="field `dns` must be empty"):
        validate(y, False)


def test_network_needs_lima_or_vnl(inst_dir):
    y = _filled(inst_dir)
    y.networks = [Network(interface="eth1")]
    with pytest.raises(ValidationError, match="must be set"):
        validate_network(y, False)


def test_network_interface_too_long(inst_dir):
    y = _filled(inst_dir)
    y.networks = [Network(vnl=str(inst_dir / "missing"), interface="i" * 16)]
    with pytest.raises(ValidationError, match="must be less than 16 bytes"):
        validate_network(y, False)


def test_network_interface_duplicate(inst_dir):
    y = _filled(inst_dir)
    missing = str(inst_dir / "missing")
    y.networks = [Network(vnl=missing, interface="eth1"), Network(vnl=missing, interface="eth1")]
    with pytest.raises(ValidationError, match=r"already been used by field `networks\[0\]"):
        validate_network(y, False)


def test_network_invalid_mac(inst_dir):
    y = _filled(inst_dir)
    y.networks = [Network(vnl=str(inst_dir / "missing"), interface="eth1", mac_address="zz")]
    with pytest.raises(ValidationError, match="field `vmnet.mac` invalid"):
        validate_network(y, False)


def test_network_valid_mac_passes(inst_dir):
    y = _filled(inst_dir)
    y.networks = [
        Network(vnl=str(inst_dir / "missing"), interface="eth1", mac_address="52:55:55:00:00:01")
    ]
    validate_network(y, False)
    assert y.networks[0].interface == "eth1"


def test_network_vnl_directory_ptp_port(inst_dir):
    y = _filled(inst_dir)
    y.networks = [Network(vnl=str(inst_dir), interface="eth1", switch_port=65535)]
    with pytest.raises(ValidationError, match="non-PTP switch"):
        validate_network(y, False)


def test_deprecated_vde_with_networks(inst_dir):
    from limahost.config import VDEDeprecated

    y = _filled(inst_dir)
    y.network.vde = [VDEDeprecated(vnl="/tmp/vde", name="eth1")]
    y.network.migrated = False
    with pytest.raises(ValidationError, match="deprecated field `network.VDE`"):
        validate_network(y, False)