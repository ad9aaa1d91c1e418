"""
HLS playlist helpers: parse media entries, rewrite relative URIs into absolute
token-bearing URLs, cut a playlist at a time boundary, and build the
single-entry playlist used by passthrough packages.
"""
import math
import re
from dataclasses import dataclass
from urllib.parse import quote

EXTINF_RE = re.compile(r"^#EXTINF:\s*([0-9.]+)")
KEY_URI_RE = re.compile(r'URI="[^"]*"')


@dataclass
class MediaEntry:
    uri: str
    duration: float
    start: float


def parse_media_entries(text: str) -> list[MediaEntry]:
    entries: list[MediaEntry] = []
    pending: float | None = None
    elapsed = 0.0
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        m = EXTINF_RE.match(line)
        if m:
            pending = float(m.group(1))
            continue
        if line.startswith("#"):
            continue
        duration = pending or 0.0
        entries.append(MediaEntry(uri=line, duration=duration, start=elapsed))
        elapsed += duration
        pending = None
    return entries


def media_names(text: str) -> list[str]:
    return [e.uri for e in parse_media_entries(text)]


def _with_token(url: str, token: str | None) -> str:
    return f"{url}?token={quote(token, safe='')}" if token else url


def rewrite_manifest(text: str, base_url: str, token: str | None) -> str:
    """Media lines and EXT-X-KEY URIs become {base_url}/{name}[?token=...]."""
    base_url = base_url.rstrip("/")
    out = []
    for raw in text.splitlines():
        line = raw.strip()
        if line.startswith("#EXT-X-KEY"):
            out.append(KEY_URI_RE.sub(f'URI="{_with_token(base_url + "/key", token)}"', line))
        elif line and not line.startswith("#"):
            name = line.split("?", 1)[0].rsplit("/", 1)[-1]
            out.append(_with_token(f"{base_url}/{name}", token))
        else:
            out.append(line)
    return "\n".join(out) + "\n"


def truncate_manifest(text: str, limit_seconds: float) -> tuple[str, set[str]]:
    """
    Keep only media entries starting before limit_seconds and close the playlist.
    Returns (playlist, allowed media names).
    """
    allowed: set[str] = set()
    out = []
    pending_tags: list[str] = []
    elapsed = 0.0
    pending_duration: float | None = None
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line == "#EXT-X-ENDLIST":
            continue
        m = EXTINF_RE.match(line)
        if m:
            pending_duration = float(m.group(1))
            pending_tags.append(line)
            continue
        if line.startswith("#"):
            if pending_duration is None:
                out.append(line)
            else:
                pending_tags.append(line)
            continue
        if elapsed >= limit_seconds:
            break
        out.extend(pending_tags)
        out.append(line)
        allowed.add(line.split("?", 1)[0].rsplit("/", 1)[-1])
        elapsed += pending_duration or 0.0
        pending_tags = []
        pending_duration = None
    out.append("#EXT-X-ENDLIST")
    return "\n".join(out) + "\n", allowed


def passthrough_manifest(media_name: str, duration: float) -> str:
    """Single-entry VOD playlist pointing at the untouched original."""
    seconds = duration if duration > 0 else 3600.0
    return "\n".join([
        "#EXTM3U",
        "#EXT-X-VERSION:3",
        f"#EXT-X-TARGETDURATION:{math.ceil(seconds)}",
        "#EXT-X-MEDIA-SEQUENCE:0",
        "#EXT-X-PLAYLIST-TYPE:VOD",
        f"#EXTINF:{seconds:.3f},",
        media_name,
        "#EXT-X-ENDLIST",
    ]) + "\n"
