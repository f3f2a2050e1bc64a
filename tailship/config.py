"""Configuration: frozen dataclasses loaded from YAML, env vars and CLI args."""

import argparse
import logging
import os
from dataclasses import dataclass, field

import yaml

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://app.tailship.io"

SYSTEM_CONFIG_PATHS = (
    "/etc/tailship/agent.yaml",
    "/usr/local/etc/tailship/agent.yaml",
)
LOCAL_CONFIG_PATH = "tailship.yaml"

LEGACY_INCLUDE = (
    "/var/log/nginx/*.log",
    "/var/log/caddy/*.log",
    "/var/log/apache2/*.log",
    "/var/log/httpd/*.log",
    "/var/www/**/storage/logs/*.log",
)
LEGACY_EXCLUDE = ("**/*.gz", "**/*.1")

UNPARSED_POLICIES = ("raw", "drop")


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


def _yaml_bool(yaml_data: dict, key: str, default: bool) -> bool:
    value = yaml_data.get(key, default)
    if isinstance(value, str):
        return _parse_bool(value)
    return bool(value)


def _yaml_float(yaml_data: dict, key: str, default: float) -> float:
    value = yaml_data.get(key, default)
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning("Invalid %s %r, using %s", key, value, default)
        return default


@dataclass(frozen=True)
class LogFormat:
    name: str = ""
    pattern: str = ""
    fields: dict = field(default_factory=dict)   # output field -> group number / placeholder
    default: dict = field(default_factory=dict)


@dataclass(frozen=True)
class StreamConfig:
    name: str = ""
    stream_id: str = ""
    url: str = ""          # explicit URL override
    key: str = ""          # stream-specific token, falls back to AgentConfig.key
    paths: tuple = ()
    exclude: tuple = ()
    format: LogFormat | None = None

    def validate(self) -> list[str]:
        """Return a list of problems; empty when the stream can be shipped."""
        problems = []
        if not self.stream_id and not self.url:
            problems.append("missing stream_id and url")
        if not self.paths:
            problems.append("no include paths")
        return problems


@dataclass(frozen=True)
class AgentConfig:
    env: str = "production"
    key: str = ""
    base_url: str = DEFAULT_BASE_URL
    streams: tuple = ()
    unparsed: str = "raw"
    watch: bool = True
    metrics_interval: float = 0.0
    debug: bool = False
    stdin: bool = False
    stdin_stream_id: str = ""


def get_default_config_path() -> str:
    """First existing system-wide config file, else the local one."""
    for path in SYSTEM_CONFIG_PATHS:
        if os.path.exists(path):
            return path
    return LOCAL_CONFIG_PATH


def load_yaml_config(path: str | None) -> dict:
    """Load the YAML config file. Returns empty dict if missing or invalid."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.debug("Config file %s not found, using defaults", path)
        return {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to load config %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Config %s is not a mapping, ignoring it", path)
        return {}
    logger.info("Loaded YAML config from %s", path)
    return data


def read_key_file(path: str) -> str:
    """Read an access token from a file, trimming surrounding whitespace."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read().strip()
    except OSError as e:
        logger.warning("Failed to read key file %s: %s", path, e)
        return ""


def _as_tuple(value) -> tuple:
    if not value:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value)
    return (str(value),)


def _mapping(value, what: str) -> dict:
    """Return ``value`` if it is a mapping; warn and use {} otherwise."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        logger.warning("Ignoring %s: expected a mapping, got %r", what, value)
        return {}
    return value


def _parse_format(data) -> LogFormat | None:
    data = _mapping(data, "stream format")
    if not data:
        return None
    return LogFormat(
        name=str(data.get("name", "")),
        pattern=str(data.get("pattern", "")),
        fields={str(k): str(v) for k, v in _mapping(data.get("fields"), "format fields").items()},
        default=dict(_mapping(data.get("default"), "format defaults")),
    )


def parse_streams(yaml_data: dict, ship_url: str = "") -> tuple:
    """Build the ordered stream list from parsed YAML.

    Multi-stream ``streams:`` entries win; otherwise the legacy
    ``discovery``/``ship`` layout becomes a single stream named "default".
    Entries of the wrong shape are skipped with a warning.
    """
    entries = yaml_data.get("streams") or []
    if not isinstance(entries, list):
        logger.warning("Ignoring streams: expected a list, got %r", entries)
        entries = []

    streams = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            logger.warning("Skipping stream #%d: expected a mapping, got %r", index, entry)
            continue
        streams.append(StreamConfig(
            name=str(entry.get("name", "")),
            stream_id=str(entry.get("stream_id", "") or ""),
            url=str(entry.get("url", "") or ""),
            key=str(entry.get("key", "") or ""),
            paths=_as_tuple(entry.get("paths")),
            exclude=_as_tuple(entry.get("exclude")),
            format=_parse_format(entry.get("format")),
        ))
    if streams:
        return tuple(streams)

    discovery = _mapping(yaml_data.get("discovery"), "discovery")
    paths = _mapping(discovery.get("paths"), "discovery.paths")
    ship = _mapping(yaml_data.get("ship"), "ship")
    include = _as_tuple(paths.get("include")) or LEGACY_INCLUDE
    exclude = _as_tuple(paths["exclude"]) if "exclude" in paths else LEGACY_EXCLUDE
    return (StreamConfig(
        name="default",
        stream_id=str(ship.get("stream_id", "") or ""),
        url=ship_url or str(ship.get("url", "") or ""),
        paths=include,
        exclude=exclude,
    ),)


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="tailship log shipping agent")
    parser.add_argument("--config", default=None, help="path to YAML config")
    parser.add_argument("--env", default=None, help="environment name")
    parser.add_argument("--ship-url", default=None, help="legacy single-stream ship URL")
    parser.add_argument("--key-file", default=None, help="path to access key file")
    parser.add_argument("--debug", action="store_true", default=False,
                        help="enable debug output")
    parser.add_argument("--stdin", action="store_true", default=False,
                        help="ship lines read from standard input")
    parser.add_argument("--stream-id", default=None,
                        help="stream to ship stdin lines to")
    return parser


def load_config(argv: list[str] | None = None) -> AgentConfig:
    """Build AgentConfig from defaults <- YAML <- env vars <- CLI args."""
    args = build_cli_parser().parse_args(argv)

    yaml_data = load_yaml_config(args.config or get_default_config_path())

    key = str(yaml_data.get("key", "") or "")
    if os.environ.get("TAILSHIP_KEY"):
        key = os.environ["TAILSHIP_KEY"]
    key_file = args.key_file or os.environ.get("TAILSHIP_KEY_FILE")
    if key_file:
        key = read_key_file(key_file) or key

    ship_url = args.ship_url or os.environ.get("TAILSHIP_URL", "")

    unparsed = str(yaml_data.get("unparsed", "raw")).lower()
    if unparsed not in UNPARSED_POLICIES:
        logger.warning("Unknown unparsed policy %r, using 'raw'", unparsed)
        unparsed = "raw"

    return AgentConfig(
        env=args.env or os.environ.get("TAILSHIP_ENV") or str(yaml_data.get("env", AgentConfig.env)),
        key=key,
        base_url=(os.environ.get("TAILSHIP_BASE_URL")
                  or str(yaml_data.get("base_url", "") or "")
                  or DEFAULT_BASE_URL).rstrip("/"),
        streams=parse_streams(yaml_data, ship_url=ship_url),
        unparsed=unparsed,
        watch=_yaml_bool(yaml_data, "watch", AgentConfig.watch),
        metrics_interval=_yaml_float(yaml_data, "metrics_interval", AgentConfig.metrics_interval),
        debug=args.debug or _parse_bool(os.environ.get("TAILSHIP_DEBUG", "false")),
        stdin=args.stdin,
        stdin_stream_id=args.stream_id or "",
    )
