import ipaddress

import pytest

from limahost.config import (
    NINEP,
    Image,
    Kernel,
    LimaYAML,
    NetworkDeprecated,
    Probe,
    VDEDeprecated,
    parse_yaml,
)

DOC = """
arch: aarch64
images:
  - location: https://example.com/img.qcow2
    arch: aarch64
    digest: sha256:abc
    kernel:
      location: /tmp/kernel
      cmdline: console=ttyAMA0
cpus: 2
memory: 2GiB
mounts:
  - location: "~"
    writable: true
    9p:
      msize: 8KiB
mountType: 9p
ssh:
  localPort: 60022
  forwardAgent: false
portForwards:
  - guestIP: 0.0.0.0
    guestPortRange: [80, 81]
    hostSocket: sock
dns:
  - 1.1.1.1
hostResolver:
  hosts:
    MY.Host: host.lima.internal
probes:
  - script: "#!/bin/false"
    description: my probe
env:
  ONE: Eins
"""


def test_parse_document():
    y = parse_yaml(DOC)
    assert y.arch == "aarch64"
    assert y.images[0].kernel == Kernel(location="/tmp/kernel", cmdline="console=ttyAMA0")
    assert y.images[0].digest == "sha256:abc"
    assert y.cpus == 2
    assert y.memory == "2GiB"
    assert y.mounts[0].location == "~"
    assert y.mounts[0].writable is True
    assert y.mounts[0].nine_p.msize == "8KiB"
    assert y.mounts[0].sshfs.cache is None
    assert y.mount_type == NINEP
    assert y.ssh.local_port == 60022
    assert y.ssh.forward_agent is False
    pf = y.port_forwards[0]
    assert pf.guest_ip == ipaddress.ip_address("0.0.0.0")
    assert pf.guest_port_range == (80, 81)
    assert pf.host_port_range == (0, 0)
    assert pf.host_socket == "sock"
    assert y.dns == [ipaddress.ip_address("1.1.1.1")]
    assert y.host_resolver.hosts == {"MY.Host": "host.lima.internal"}
    assert y.probes == [Probe(script="#!/bin/false", description="my probe")]
    assert y.env == {"ONE": "Eins"}


def test_round_trip():
    y = parse_yaml(DOC)
    assert LimaYAML.from_dict(y.to_dict()) == y


def test_empty_to_dict_keeps_images():
    assert LimaYAML().to_dict() == {"images": []}


def test_empty_document():
    assert parse_yaml("") == LimaYAML()


def test_pointer_false_is_kept():
    y = LimaYAML.from_dict({"ssh": {"forwardAgent": False}})
    assert y.to_dict()["ssh"] == {"forwardAgent": False}


def test_probe_fields_not_omitted():
    d = LimaYAML(probes=[Probe(script="x")]).to_dict()
    assert d["probes"] == [{"mode": "", "description": "", "script": "x", "hint": ""}]


def test_scalar_converted_to_string():
    y = LimaYAML.from_dict({"memory": 4})
    assert y.memory == "4"


def test_invalid_ip():
    with pytest.raises(ValueError):
        parse_yaml("dns: [not-an-ip]")


def test_non_mapping_document():
    with pytest.raises(ValueError):
        parse_yaml("- a\n- b\n")


def test_cpus_must_be_integer():
    with pytest.raises(ValueError):
        LimaYAML.from_dict({"cpus": "four"})


def test_switch_port_range_checked():
    with pytest.raises(ValueError):
        LimaYAML.from_dict({"networks": [{"switchPort": 70000}]})


def test_unknown_keys_ignored():
    y = LimaYAML.from_dict({"whatever": 1, "cpus": 3})
    assert y == LimaYAML(cpus=3)


def test_migrated_flag_ignored_in_equality():
    a = NetworkDeprecated(vde=[VDEDeprecated(name="x")])
    b = NetworkDeprecated(vde=[VDEDeprecated(name="x")], migrated=True)
    assert a == b


def test_image_inline_file_fields():
    y = LimaYAML.from_dict({"images": [{"location": "/a", "arch": "x86_64"}]})
    assert y.images == [Image(location="/a", arch="x86_64")]
    assert y.to_dict()["images"] == [{"location": "/a", "arch": "x86_64"}]