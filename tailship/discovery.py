"""File discovery: expands per-stream include/exclude globs into file paths."""

import functools
import glob
import logging
import os
import re
from dataclasses import dataclass

from tailship.config import StreamConfig

logger = logging.getLogger(__name__)


@dataclass
class StreamFiles:
    stream: StreamConfig
    files: list[str]


def _translate_segment(segment: str) -> str:
    """Regex for one path segment; wildcards never cross a ``/``."""
    out = []
    i, n = 0, len(segment)
    while i < n:
        c = segment[i]
        i += 1
        if c == "*":
            while i < n and segment[i] == "*":
                i += 1
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            j = i
            if j < n and segment[j] in "!^":
                j += 1
            if j < n and segment[j] == "]":
                j += 1
            j = segment.find("]", j)
            if j < 0:
                out.append(re.escape(c))
                continue
            body = segment[i:j]
            i = j + 1
            negate = body[:1] in ("!", "^")
            if negate:
                body = body[1:]
            body = "".join("-" if ch == "-" else re.escape(ch) for ch in body)
            out.append(f"[^/{body}]" if negate else f"[{body}]")
        else:
            out.append(re.escape(c))
    return "".join(out)


@functools.lru_cache(maxsize=256)
def compile_exclude(pattern: str) -> re.Pattern:
    """Compile a doublestar-style pattern matched against the whole path.

    ``*``, ``?`` and ``[...]`` stay inside one segment; a ``**`` segment
    spans any number of directories, including none.
    """
    parts = os.path.expanduser(pattern).split("/")
    last = len(parts) - 1
    regex = []
    for index, part in enumerate(parts):
        if part == "**":
            regex.append(".*" if index == last else "(?:[^/]*/)*")
            continue
        regex.append(_translate_segment(part))
        if index != last:
            regex.append("/")
    return re.compile("".join(regex) + r"\Z", re.DOTALL)


def is_excluded(path: str, patterns) -> bool:
    """True if any exclude pattern matches the path.

    ``**/`` may match zero directories, so ``**/*.gz`` also excludes a
    bare ``a.gz``; ``/logs/*.log`` does not exclude ``/logs/sub/b.log``.
    """
    for pattern in patterns:
        try:
            if compile_exclude(pattern).match(path):
                return True
        except re.error as e:
            logger.warning("Skipping malformed exclude pattern %r: %s", pattern, e)
    return False


def expand_pattern(pattern: str) -> list[str]:
    """Expand one include pattern to regular files. Never raises.

    Hidden files and directories are matched like any others.
    """
    try:
        matches = glob.glob(os.path.expanduser(pattern), recursive=True, include_hidden=True)
    except (OSError, ValueError, re.error) as e:
        logger.warning("Skipping malformed include pattern %r: %s", pattern, e)
        return []
    return sorted(m for m in matches if os.path.isfile(m))


def discover(streams, log: logging.Logger | None = None) -> list[StreamFiles]:
    """Map each shippable stream to its matched files, in stream order.

    Streams that fail validation or match nothing produce no entry.
    """
    log = log or logger
    mappings = []
    for stream in streams:
        problems = stream.validate()
        if problems:
            log.warning("Stream %r excluded: %s", stream.name, ", ".join(problems))
            continue

        files: list[str] = []
        seen: set[str] = set()
        for pattern in stream.paths:
            for match in expand_pattern(pattern):
                if match in seen or is_excluded(match, stream.exclude):
                    continue
                seen.add(match)
                files.append(match)

        if not files:
            log.info("Stream %r matched no files", stream.name)
            continue
        log.info("Stream %r: discovered %d file(s)", stream.name, len(files))
        log.debug("Stream %r files: %s", stream.name, files)
        mappings.append(StreamFiles(stream=stream, files=files))
    return mappings
