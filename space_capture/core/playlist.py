"""HLS playlist helpers: chunk sequence parsing and playlist URL rules.

WHY: Both the availability monitor (dynamic playlist) and the finalization
verifier (master/final playlist) need the same view of "which chunks does
this playlist list". Keeping the parsing pure makes it trivially testable
and lets both callers agree on what a chunk index is.

HOW: Chunk URLs look like ``chunk_<sequence>.aac`` or, on Periscope CDNs,
``chunk_<timestamp>_<sequence>_a.aac``. A single regex pulls the sequence
number from each chunk token. URL helpers rewrite a dynamic playlist URL
into its master playlist URL and resolve the final playlist the master
points to.

RULES:
- get_chunk_indexes never raises; empty or malformed text returns []
- Tokens without a "chunk_" prefix are ignored, not errors
- Index order follows the playlist text order (duplicates kept)
"""

from __future__ import annotations

import re
from typing import List, Optional
from urllib.parse import urljoin, urlsplit

# chunk_<seq> or chunk_<timestamp>_<seq>, sequence followed by "_" or "."
_CHUNK_RE = re.compile(r"chunk_(?:\d+_)?(\d+)(?=[_.])")
_PLAYLIST_NAME_RE = re.compile(r"(?:dynamic_playlist|playlist_\d+)")
_PLAYLIST_FILE_RE = re.compile(r"[^/]+\.m3u8.*$")


def get_chunk_indexes(text: Optional[str]) -> List[int]:
    """Return the chunk sequence numbers listed in a playlist.

    Args:
        text: Raw playlist text (may be None or empty).

    Returns:
        Sequence numbers in the order they appear.
    """
    if not text or not isinstance(text, str):
        return []
    return [int(match.group(1)) for match in _CHUNK_RE.finditer(text)]


def get_master_playlist_url(url: str) -> str:
    """Rewrite a dynamic (live) or replay playlist URL to its master playlist URL.

    RULES:
    - "dynamic_playlist" and "playlist_<n>" both become "master_playlist"
    - The "?type=live" and "?type=replay" query markers are dropped
    """
    url = url.replace("?type=live", "").replace("?type=replay", "")
    return _PLAYLIST_NAME_RE.sub("master_playlist", url)


def get_chunk_prefix(url: str) -> str:
    """Return the URL directory that chunk file names are relative to."""
    return _PLAYLIST_FILE_RE.sub("", url)


def resolve_final_playlist_url(master_url: str, master_text: str) -> Optional[str]:
    """Resolve the final (aggregated) playlist URL a master playlist points to.

    WHY: After a broadcast ends the master playlist is a variant list whose
    single entry is the complete, post-broadcast chunk playlist. That entry
    is what extraction must read in final mode.

    HOW: Takes the first non-comment line ending in ``.m3u8`` (query string
    allowed). Absolute paths are joined against the master URL's origin,
    relative paths against its directory.

    RULES:
    - Returns None when the master playlist lists no playlist entry
    - Fully qualified entries are returned unchanged
    """
    for raw_line in (master_text or "").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if ".m3u8" not in line:
            continue
        if urlsplit(line).scheme:
            return line
        if line.startswith("/"):
            parts = urlsplit(master_url)
            return "{}://{}{}".format(parts.scheme, parts.netloc, line)
        return urljoin(get_chunk_prefix(master_url), line)
    return None
