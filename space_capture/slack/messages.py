"""Block Kit builders and text formatters for broadcast notifications.

WHY: The notifier posts three kinds of messages (broadcast is live, playlist
resolved, capture finished with detected phrases). Keeping the block
builders here keeps notifier.py focused on delivery.

HOW: Each build_* function takes event data and returns a list of Block Kit
block dicts ready for client.chat_postMessage(blocks=...). Times use Slack's
<!date^...> syntax so every reader sees them in their own timezone.

RULES:
- All builders return list[dict] (Block Kit blocks) or str (plain text)
- Phrase lines are "HH:MM:SS text", one per line
- A single section text stays under Slack's 3000 character limit; long
  phrase lists are split across several sections
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from space_capture.api.models import BroadcastMetadata, BroadcastState
from space_capture.core.captions import CaptionPhrase, format_timestamp
from space_capture.core.job import CaptureMode

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BROADCAST_URL_TEMPLATE = "https://twitter.com/i/spaces/{}"
USER_URL_TEMPLATE = "https://twitter.com/{}"

# Slack rejects section text above 3000 characters
SECTION_TEXT_LIMIT = 2900


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def broadcast_url(broadcast_id: str) -> str:
    return BROADCAST_URL_TEMPLATE.format(broadcast_id)


def format_slack_time(ms: Optional[int]) -> Optional[str]:
    """Render epoch milliseconds as a Slack date token, or None."""
    if not ms:
        return None
    seconds = ms // 1000
    return "<!date^{}^{{date_short_pretty}} {{time}}|{}>".format(seconds, seconds)


def build_title(metadata: BroadcastMetadata) -> str:
    host = "`{}`".format(metadata.host_screen_name or "unknown")
    if metadata.state is BroadcastState.ENDED:
        return "{} Space ended".format(host)
    return "{} is hosting a Space".format(host)


def phrase_lines(phrases: Sequence[CaptionPhrase]) -> List[str]:
    """One "HH:MM:SS text" line per phrase, matched cues carrying their markup."""
    return [
        "{} {}".format(format_timestamp(p.timestamp_ms), p.display_text)
        for p in phrases
    ]


def _split_lines(lines: Sequence[str], limit: int = SECTION_TEXT_LIMIT) -> List[str]:
    chunks: List[str] = []
    current: List[str] = []
    size = 0
    for line in lines:
        line = line[:limit]
        if current and size + len(line) + 1 > limit:
            chunks.append("\n".join(current))
            current = []
            size = 0
        current.append(line)
        size += len(line) + 1
    if current:
        chunks.append("\n".join(current))
    return chunks


# ---------------------------------------------------------------------------
# Block Kit builders
# ---------------------------------------------------------------------------


def _header_blocks(metadata: BroadcastMetadata) -> List[Dict[str, Any]]:
    author = "{} (<{}|@{}>)".format(
        metadata.host_display_name or metadata.host_screen_name,
        USER_URL_TEMPLATE.format(metadata.host_screen_name),
        metadata.host_screen_name,
    )
    section: Dict[str, Any] = {
        "type": "section",
        "text": {
            "type": "mrkdwn",
            "text": "*{}*\n{}\n{}".format(
                build_title(metadata), author, broadcast_url(metadata.broadcast_id)
            ),
        },
    }
    if metadata.host_avatar_url:
        section["accessory"] = {
            "type": "image",
            "image_url": metadata.host_avatar_url,
            "alt_text": metadata.host_screen_name or "host",
        }
    blocks: List[Dict[str, Any]] = [section]
    if metadata.title:
        blocks.append({
            "type": "section",
            "text": {"type": "mrkdwn", "text": "```{}```".format(metadata.title)},
        })
    return blocks


def _time_fields(metadata: BroadcastMetadata) -> List[Dict[str, Any]]:
    fields = []
    started = format_slack_time(metadata.started_at)
    if started and metadata.state in (BroadcastState.RUNNING, BroadcastState.ENDED):
        fields.append({"type": "mrkdwn", "text": "*Started at*\n{}".format(started)})
    ended = format_slack_time(metadata.ended_at)
    if ended and metadata.state is BroadcastState.ENDED:
        fields.append({"type": "mrkdwn", "text": "*Ended at*\n{}".format(ended)})
    return fields


def build_live_blocks(metadata: BroadcastMetadata) -> List[Dict[str, Any]]:
    """Blocks announcing that a watched broadcast went live."""
    blocks = _header_blocks(metadata)
    fields = _time_fields(metadata)
    if fields:
        blocks.append({"type": "section", "fields": fields})
    return blocks


def build_playlist_blocks(
    metadata: BroadcastMetadata, master_playlist_url: str
) -> List[Dict[str, Any]]:
    blocks = build_live_blocks(metadata)
    blocks.append({
        "type": "section",
        "text": {
            "type": "mrkdwn",
            "text": "*Playlist url*\n```{}```".format(master_playlist_url),
        },
    })
    return blocks


def build_capture_blocks(
    metadata: BroadcastMetadata,
    phrases: Sequence[CaptionPhrase],
    mode: CaptureMode,
) -> List[Dict[str, Any]]:
    """Blocks for a finished capture: header, times, and the phrase list.

    RULES:
    - Preview captures are labelled so readers know the list is partial
    - Phrase lines are split into as many sections as needed
    """
    blocks = _header_blocks(metadata)
    fields = _time_fields(metadata)
    if fields:
        blocks.append({"type": "section", "fields": fields})

    label = "Detected phrases (live preview)" if mode is CaptureMode.PREVIEW else "Detected phrases"
    blocks.append({
        "type": "section",
        "text": {"type": "mrkdwn", "text": "*{}*".format(label)},
    })
    for chunk in _split_lines(phrase_lines(phrases)):
        blocks.append({
            "type": "section",
            "text": {"type": "mrkdwn", "text": chunk},
        })
    return blocks


def build_fallback_text(metadata: BroadcastMetadata, detail: str = "") -> str:
    """Plain-text fallback for notifications and clients without blocks."""
    text = "{}: {}".format(build_title(metadata).replace("`", ""), broadcast_url(metadata.broadcast_id))
    if detail:
        text = "{} ({})".format(text, detail)
    return text
