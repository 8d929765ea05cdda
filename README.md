# limahost

`limahost` is a library for the host side of running Linux virtual machines
under QEMU. It provides:

- the instance configuration model (`limahost.config`) and its YAML mapping
- merging of defaults and overrides into a configuration (`limahost.defaults`,
  `limahost.load`)
- validation of a filled-in configuration (`limahost.validate`)
- the host agent's status events and a watcher for its output files
  (`limahost.events`)
- the host agent's HTTP API over a UNIX socket, both client and server
  (`limahost.agentapi`, `limahost.httpclient`)
- small helpers: `~` expansion of local paths (`limahost.localpath`),
  directory locks (`limahost.lockutil`), and relaying of JSON log lines into a
  Python logger (`limahost.logprop`)

## Installation

The package needs Python 3.10 or later and depends on `pyyaml`. The tests use
`pytest` (install the `test` extra).

## Configuration

`load(data, file_path, config_dir=None)` parses a YAML document into a
`LimaYAML` object and fills in every field the document leaves unset. When
`config_dir` is given, `default.yaml` and `override.yaml` from that directory
are mixed in as defaults and overrides; missing files are ignored. The result
is not validated; `validate(y, warn)` does that and raises `ValidationError`
on the first problem.

```python
from limahost.load import load
from limahost.validate import validate, ValidationError

text = b"""
images:
  - location: "https://images.example.com/jammy-amd64.img"
    arch: "x86_64"
arch: "x86_64"
mounts:
  - location: "/tmp/lima"
    writable: true
"""

y = load(text, "/home/user/.lima/default/lima.yaml", "/home/user/.lima/_config")
print(y.cpus, y.memory, y.disk)      # 4 4GiB 100GiB unless set elsewhere

try:
    validate(y, True)
except ValidationError as err:
    print("invalid configuration:", err)
```

`LimaYAML.from_dict` and `LimaYAML.to_dict` convert to and from the mapping
form with the YAML key names; `to_dict` leaves out empty optional fields.
`parse_yaml` parses a document without filling defaults.

The precedence rules of `fill_default(y, d, o, file_path)` (instance `y`,
defaults `d`, overrides `o`):

- **Scalars:** the override wins over the instance, the instance over the
  defaults; built-in values fill whatever is still unset.
- **Maps** (`env`, `hostResolver.hosts`, `cpuType`): merged defaults, then
  instance, then override, later sources winning. Host names are lower-cased
  and made fully qualified.
- **Lists** (`images`, `provision`, `probes`, `portForwards`,
  `containerd.archives`): joined as override, then instance, then defaults.
- **`mounts` and `networks`:** combined by location or by interface name; the
  setting with the highest priority wins.
- **`dns`:** taken whole from the highest-priority source that sets it.
- **`caCerts.files` and `caCerts.certs`:** joined without duplicates.

`fill_port_forward_defaults` fills in protocol, addresses and port ranges of a
rule, and expands the template fields `{{.Home}}`, `{{.UID}}` and `{{.User}}`
in `guestSocket`, and `{{.Dir}}`, `{{.Name}}`, `{{.Home}}`, `{{.UID}}` and
`{{.User}}` in `hostSocket`. A relative host socket is placed under the
`sock` directory of the instance.

`ram_in_bytes("4GiB")` parses sizes in binary units, and `validate_port`
checks a single port number.

## Status events

An `Event` carries a time and a `Status` (`running`, `degraded`, `exiting`,
`errors`, `ssh_local_port`). `Event.to_json()` gives its one-line JSON form
and `parse_event(line)` reads one back.

`watch(ha_stdout_path, ha_stderr_path, begin, on_event, stop_event=None)`
follows an agent's stdout file for events and its stderr file for JSON log
lines. It calls `on_event` for each event and returns when the callback
returns `True` or when `stop_event` is set. Log lines are relayed through
`propagate_json`, which drops lines older than `begin`.

## Host agent API

`serve` runs a `Backend` on a UNIX socket in a background thread. The backend
answers `GET /v1/info` from any object with an `info()` method returning an
`Info`. Errors are returned as `{"message": ...}` with status 500.

```python
from limahost.agentapi import Backend, Info, new_host_agent_client, serve

class Agent:
    def info(self):
        return Info(ssh_local_port=60022)

server = serve("/tmp/ha.sock", Backend(Agent()))
client = new_host_agent_client("/tmp/ha.sock")
print(client.info().ssh_local_port)   # 60022
server.shutdown()
server.server_close()
```

The lower-level `limahost.httpclient` offers `UnixHTTPClient`, `get`, which
raises `HTTPStatusError` for any non-2XX status, and `successful`. The
message of an `HTTPStatusError` is the `message` field of a JSON error body
when there is one.

## Helpers

- `expand(path)` expands `~` and `~/...` and returns an absolute path;
  `~user/...` raises `ValueError`.
- `dir_lock(directory)` is a context manager holding an exclusive lock on a
  directory; `with_dir_lock(directory, fn)` calls `fn` under it.
- `propagate_json(logger, line, header, begin)` re-logs a JSON log line at
  its own level; panic and fatal become errors, and unparsable lines are
  logged verbatim at info level.

## What the package does not do

The package does not start or stop virtual machines, run QEMU, open SSH
connections, wait for the guest to become ready, serve DNS to the guest, or
forward ports or sockets. It has no command-line program. It provides the
configuration, validation, event and API pieces such a host agent is built
from.