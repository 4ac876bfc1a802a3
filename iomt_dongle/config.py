"""
Configuration loading for the IoMT dongle bridge.

The dongle reads a Java-style ``dongle.properties`` file from the working
directory, falling back to the default bundled with the package.
Only ``device_port`` is required; every other key is handed untouched to the
collaborator that consumes it.
"""

import logging
import re
from collections.abc import Mapping
from importlib import resources
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterator, Optional, Union

import yaml

from .errors import ConfigurationInvalidError, ConfigurationMissingError

logger = logging.getLogger(__name__)

PROPERTIES_FILE_NAME = "dongle.properties"
DEVICE_PORT_KEY = "device_port"
YAML_SUFFIXES = (".yaml", ".yml")

_WHITESPACE = " \t\f"
_LINE_BREAK_RE = re.compile(r"\r\n|\r|\n")
_ESCAPE_RE = re.compile(r"\\(u[0-9a-fA-F]{4}|.?)", re.DOTALL)
_ESCAPED_CHARS = {"t": "\t", "n": "\n", "r": "\r", "f": "\f"}


class DongleOptions(Mapping):
    """Read-only option map loaded once at startup"""

    def __init__(self, values: Mapping[str, str], source: str = "<memory>"):
        self._values = MappingProxyType(dict(values))
        self.source = source

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"DongleOptions(source={self.source!r}, keys={sorted(self._values)})"

    @property
    def device_port(self) -> Optional[str]:
        return self._values.get(DEVICE_PORT_KEY)


def option_int(options: Mapping, key: str, default: int) -> int:
    """Read an integer option; blank or missing values give the default"""
    raw = options.get(key)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationInvalidError(f"Option {key} must be an integer, got {raw!r}") from e


def option_float(options: Mapping, key: str, default: float) -> float:
    """Read a numeric option; blank or missing values give the default"""
    raw = options.get(key)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationInvalidError(f"Option {key} must be a number, got {raw!r}") from e


def parse_properties(text: str) -> Dict[str, str]:
    """Parse a Java ``.properties`` document into a dict.

    Follows the ``java.util.Properties`` rules so existing deployment files
    load unchanged:

    - ``#`` and ``!`` start comment lines
    - the key ends at the first unescaped ``=``, ``:`` or whitespace
    - an odd number of trailing backslashes continues the line
    - ``\\t``, ``\\n``, ``\\r``, ``\\f`` and ``\\uXXXX`` are decoded, any other
      escaped character stands for itself (``\\:``, ``\\=``, ``\\\\``)

    Raises:
        ConfigurationInvalidError: On a malformed ``\\uXXXX`` escape
    """
    values: Dict[str, str] = {}
    for line in _logical_lines(text):
        key, value = _split_property(line)
        values[_unescape(key)] = _unescape(value)
    return values


def _logical_lines(text: str) -> Iterator[str]:
    pending = None
    for raw_line in _LINE_BREAK_RE.split(text):
        line = raw_line.lstrip(_WHITESPACE)
        if pending is None:
            if not line or line[0] in "#!":
                continue
        else:
            line = pending + line

        trailing = len(line) - len(line.rstrip("\\"))
        if trailing % 2:
            pending = line[:-1]
            continue
        pending = None
        yield line

    # A continuation backslash on the last line is dropped
    if pending:
        yield pending


def _split_property(line: str):
    index = 0
    while index < len(line):
        char = line[index]
        if char == "\\":
            index += 2
            continue
        if char in "=:" or char in _WHITESPACE:
            break
        index += 1

    key, rest = line[:index], line[index:].lstrip(_WHITESPACE)
    if rest[:1] in ("=", ":"):
        rest = rest[1:].lstrip(_WHITESPACE)
    return key, rest


def _unescape(text: str) -> str:
    def replace(match):
        escaped = match.group(1)
        if len(escaped) == 5:
            return chr(int(escaped[1:], 16))
        if escaped == "u":
            raise ConfigurationInvalidError(f"Malformed \\uXXXX escape in {text!r}")
        return _ESCAPED_CHARS.get(escaped, escaped)

    return _ESCAPE_RE.sub(replace, text)


def parse_yaml(text: str) -> Dict[str, str]:
    """Parse a flat YAML mapping into a dict of strings"""
    try:
        raw = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigurationInvalidError(f"Invalid YAML configuration: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationInvalidError("YAML configuration must be a mapping")

    values: Dict[str, str] = {}
    for key, value in raw.items():
        if isinstance(value, (dict, list)):
            raise ConfigurationInvalidError(f"Option {key} must be a scalar value")
        values[str(key)] = "" if value is None else str(value)
    return values


class ConfigurationLoader:
    """Locates and parses the dongle configuration file"""

    def __init__(self, filename: str = PROPERTIES_FILE_NAME,
                 search_dir: Optional[Union[str, Path]] = None,
                 explicit_path: Optional[Union[str, Path]] = None):
        self.filename = filename
        self.search_dir = Path(search_dir) if search_dir is not None else Path.cwd()
        self.explicit_path = Path(explicit_path) if explicit_path is not None else None

    def locate(self):
        """Return the config file, preferring the working directory.

        Returns a ``Path`` or an ``importlib.resources`` traversable for the
        bundled default.
        """
        if self.explicit_path is not None:
            if not self.explicit_path.is_file():
                raise ConfigurationMissingError(f"Cannot find configuration file - {self.explicit_path}!")
            return self.explicit_path

        local = self.search_dir / self.filename
        if local.is_file():
            return local

        bundled = self._bundled_default()
        if bundled is not None:
            return bundled

        raise ConfigurationMissingError(f"Cannot find configuration file - {self.filename}!")

    def _bundled_default(self):
        resource = resources.files("iomt_dongle").joinpath("resources").joinpath(self.filename)
        return resource if resource.is_file() else None

    def load(self) -> DongleOptions:
        """Load and validate the configuration"""
        source = self.locate()
        origin = str(source) if isinstance(source, Path) else f"default {self.filename}"
        logger.info(f"Loading configuration from {origin}...")

        try:
            text = source.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigurationInvalidError(f"Failed to read configuration {origin}: {e}") from e

        if source.name.endswith(YAML_SUFFIXES):
            values = parse_yaml(text)
        else:
            values = parse_properties(text)

        device_port = values.get(DEVICE_PORT_KEY)
        logger.info(f"-- Device Port: {device_port}")
        if not device_port:
            raise ConfigurationInvalidError(
                f"Invalid configuration {origin}: {DEVICE_PORT_KEY} is required"
            )

        return DongleOptions(values, source=origin)
