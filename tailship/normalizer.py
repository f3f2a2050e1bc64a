"""Event normalizer: turns raw lines into Events through a fallback chain.

Chain order, first match wins:
  1. Stream-specific custom regex format
  2. JSON object
  3. Access log: nginx with response time, combined, then common format
  4. Raw passthrough (or drop, depending on the unparsed-line policy)
"""

import json
import logging
import math
import re
import socket

from tailship.config import LogFormat
from tailship.models import Event, LogLine

logger = logging.getLogger(__name__)

HOSTNAME_PLACEHOLDER = "hostname"
FILENAME_PLACEHOLDER = "filename"

_INT_FIELDS = ("status", "bytes")
_FLOAT_FIELDS = ("rt",)

_REQUEST = r'^(\S+) \S+ \S+ \[([^\]]+)\] "(\S+) ([^"]*) HTTP/[^"]*" (\d+) (\S+)'

# IP - - [time] "METHOD path HTTP/x" status bytes "referer" "user-agent" rt
_NGINX_RT_RE = re.compile(_REQUEST + r' "([^"]*)" "([^"]*)" ([0-9.]+)')
_COMBINED_RE = re.compile(_REQUEST + r' "([^"]*)" "([^"]*)"')
_COMMON_RE = re.compile(_REQUEST)

# pattern -> compiled regex, or None when the pattern does not compile
_format_cache: dict[str, re.Pattern | None] = {}


def _to_int(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0


def _to_float(value: str) -> float:
    try:
        return float(value)
    except ValueError:
        return 0.0


def _compile_format(pattern: str, log: logging.Logger) -> re.Pattern | None:
    if pattern not in _format_cache:
        try:
            _format_cache[pattern] = re.compile(pattern)
        except re.error as e:
            log.warning("Invalid custom format pattern %r: %s", pattern, e)
            _format_cache[pattern] = None
    return _format_cache[pattern]


def _finite_float(value: str) -> float:
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"non-finite number: {value}")
    return number


def _reject_constant(name: str):
    raise ValueError(f"non-standard JSON constant: {name}")


def _coerce(name: str, value: str):
    """status/bytes -> int, rt -> finite float, anything else stays a string."""
    try:
        if name in _INT_FIELDS:
            return int(value)
        if name in _FLOAT_FIELDS:
            return _finite_float(value)
    except ValueError:
        pass
    return value


def parse_custom_format(line: LogLine, hostname: str, fmt: LogFormat,
                        log: logging.Logger | None = None) -> dict | None:
    """Apply a custom regex format. Returns the field map, or None if no match."""
    log = log or logger
    if not fmt.pattern:
        return None
    regex = _compile_format(fmt.pattern, log)
    if regex is None:
        return None
    m = regex.search(line.text)
    if not m:
        return None

    fields = dict(fmt.default)
    for name, source in fmt.fields.items():
        if source == HOSTNAME_PLACEHOLDER:
            fields[name] = hostname
        elif source == FILENAME_PLACEHOLDER:
            fields[name] = line.source
        elif source.isdigit() and int(source) <= regex.groups:
            value = m.group(int(source))
            if value is not None:
                fields[name] = _coerce(name, value)
    fields.setdefault("host", hostname)
    return fields


def parse_json_object(line: LogLine, hostname: str) -> dict | None:
    """Strict JSON-object decode, injecting ``host`` when absent.

    NaN, Infinity and out-of-range numbers such as ``1e999`` are not JSON,
    so lines containing them fall through to the next step.
    """
    try:
        data = json.loads(line.text, parse_constant=_reject_constant,
                          parse_float=_finite_float)
    except (ValueError, TypeError):
        return None
    if not isinstance(data, dict):
        return None
    data.setdefault("host", hostname)
    return data


def parse_access_log(line: LogLine, hostname: str) -> dict | None:
    """Heuristic nginx/apache access-log parse. Returns None if nothing matches."""
    text = line.text
    m = _NGINX_RT_RE.match(text)
    rt = 0.0
    user_agent = None
    if m:
        rt = _to_float(m.group(9))
        user_agent = m.group(8)
    else:
        m = _COMBINED_RE.match(text)
        if m:
            user_agent = m.group(8)
        else:
            m = _COMMON_RE.match(text)
    if not m:
        return None

    entry = {
        "host": hostname,
        "path": m.group(4),
        "method": m.group(3),
        "status": _to_int(m.group(5)),
        "rt": rt,
        "bytes": _to_int(m.group(6)),
        "src": line.source,
        "ip": m.group(1),
    }
    if user_agent:
        entry["user_agent"] = user_agent
    return entry


class Normalizer:
    """Runs the fallback chain for one agent. Stateless apart from the format cache."""

    def __init__(self, hostname: str | None = None, unparsed: str = "raw",
                 log: logging.Logger | None = None):
        self._hostname = hostname or socket.gethostname()
        self._drop_unparsed = unparsed == "drop"
        self._log = log or logger

    @property
    def hostname(self) -> str:
        return self._hostname

    def normalize(self, line: LogLine, fmt: LogFormat | None = None) -> tuple[Event | None, bool]:
        """Return ``(event, accepted)``. Never raises."""
        if fmt is not None:
            fields = parse_custom_format(line, self._hostname, fmt, self._log)
            if fields is not None:
                return Event.structured(fields), True

        fields = parse_json_object(line, self._hostname)
        if fields is not None:
            return Event.structured(fields), True

        fields = parse_access_log(line, self._hostname)
        if fields is not None:
            return Event.structured(fields), True

        if self._drop_unparsed:
            self._log.debug("Skipping unparseable line from %s: %s", line.source, line.text[:200])
            return None, False
        return Event.raw(line.text), True
