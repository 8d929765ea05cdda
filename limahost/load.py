"""Loading an instance configuration merged with user defaults and overrides."""

from __future__ import annotations

import logging
import os
from typing import Optional, Union

from .config import LimaYAML, parse_yaml
from .defaults import fill_default

__all__ = ["DEFAULT_FILENAME", "OVERRIDE_FILENAME", "load"]

_log = logging.getLogger(__name__)

DEFAULT_FILENAME = "default.yaml"
OVERRIDE_FILENAME = "override.yaml"


def _read_optional(path: str, file_path: str) -> LimaYAML:
    try:
        with open(path, "rb") as fh:
            content = fh.read()
    except FileNotFoundError:
        return LimaYAML()
    _log.debug("Mixing %r into %r", path, file_path)
    return parse_yaml(content)


def load(
    data: Union[str, bytes],
    file_path: str,
    config_dir: Optional[str] = None,
) -> LimaYAML:
    """Parse ``data`` and fill unset fields with defaults.

    When ``config_dir`` is given, ``default.yaml`` and ``override.yaml`` found
    there are mixed in as defaults and overrides; missing files are ignored.
    The result is not validated.
    """
    y = parse_yaml(data)
    d = LimaYAML()
    o = LimaYAML()
    if config_dir is not None:
        config_dir = os.fspath(config_dir)
        d = _read_optional(os.path.join(config_dir, DEFAULT_FILENAME), file_path)
        o = _read_optional(os.path.join(config_dir, OVERRIDE_FILENAME), file_path)
    fill_default(y, d, o, file_path)
    return y