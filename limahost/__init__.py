"""Host-side tooling for Linux virtual machines: instance configuration, validation, status events and the host agent API."""

__version__ = "0.1.0"