"""Slack delivery of broadcast watch events.

WHY: People following a broadcast want to hear when it goes live and, once
captured, which keywords came up and when, with the audio attached. Slack
is where they already are.

HOW: SlackNotifier wraps a slack_sdk WebClient (taken from a slack-bolt App
built by create_app) and implements notify(event). Each event type maps to
one chat_postMessage with Block Kit blocks from messages.py; a capture
event also uploads the audio artifact into the message thread with
files_upload_v2.

RULES:
- notify() is blocking; the supervisor calls it from a worker thread
- PlaylistResolved is only posted when notify_playlist is on
- A failed Slack call is logged and does not raise
- Uses files_upload_v2 (v1 is deprecated)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from slack_bolt import App
from slack_sdk.errors import SlackApiError

from space_capture.core.events import (
    BroadcastLive,
    CaptureCompleted,
    PlaylistResolved,
    WatchEvent,
)
from space_capture.core.job import CaptureMode
from space_capture.slack.messages import (
    build_capture_blocks,
    build_fallback_text,
    build_live_blocks,
    build_playlist_blocks,
)

logger = logging.getLogger(__name__)


def create_app(bot_token: Optional[str] = None) -> App:
    """Create the slack-bolt App whose client posts notifications.

    RULES:
    - If bot_token is None, reads SLACK_BOT_TOKEN from the environment
    """
    token = bot_token or os.environ.get("SLACK_BOT_TOKEN", "")
    if not token:
        raise ValueError("SLACK_BOT_TOKEN environment variable is required")
    return App(token=token)


class SlackNotifier:
    """Posts watch events to one Slack channel."""

    def __init__(self, client: Any, channel_id: str, notify_playlist: bool = False) -> None:
        if not channel_id:
            raise ValueError("A Slack channel id is required")
        self._client = client
        self.channel_id = channel_id
        self.notify_playlist = notify_playlist

    @classmethod
    def from_env(cls, notify_playlist: bool = False) -> "SlackNotifier":
        """Build a notifier from SLACK_BOT_TOKEN and SLACK_CHANNEL_ID."""
        app = create_app()
        channel_id = os.environ.get("SLACK_CHANNEL_ID", "")
        return cls(app.client, channel_id, notify_playlist=notify_playlist)

    def notify(self, event: WatchEvent) -> None:
        if isinstance(event, BroadcastLive):
            self._post(
                build_live_blocks(event.metadata),
                build_fallback_text(event.metadata, "live"),
            )
        elif isinstance(event, PlaylistResolved):
            if not self.notify_playlist:
                return
            self._post(
                build_playlist_blocks(event.metadata, event.master_playlist_url),
                build_fallback_text(event.metadata, "playlist resolved"),
            )
        elif isinstance(event, CaptureCompleted):
            self._notify_capture(event)
        else:
            logger.warning("Ignoring unknown event %r", event)

    def _notify_capture(self, event: CaptureCompleted) -> None:
        detail = "{} phrases".format(len(event.phrases))
        if event.mode is CaptureMode.PREVIEW:
            detail += ", live preview"
        response = self._post(
            build_capture_blocks(event.metadata, event.phrases, event.mode),
            build_fallback_text(event.metadata, detail),
        )
        if response is None:
            return
        if event.audio_path is None or not Path(event.audio_path).exists():
            logger.error("Audio file not found: %s", event.audio_path)
            return
        self._upload(Path(event.audio_path), thread_ts=response.get("ts"))

    def _post(self, blocks: List[Dict[str, Any]], text: str) -> Optional[Any]:
        try:
            return self._client.chat_postMessage(
                channel=self.channel_id,
                blocks=blocks,
                text=text,
            )
        except SlackApiError:
            logger.exception("Failed to post Slack message: %s", text)
            return None

    def _upload(self, audio_path: Path, thread_ts: Optional[str]) -> None:
        try:
            self._client.files_upload_v2(
                channel=self.channel_id,
                thread_ts=thread_ts,
                file=str(audio_path),
                filename=audio_path.name,
                title=audio_path.name,
            )
            logger.info("Uploaded %s to Slack", audio_path.name)
        except (SlackApiError, OSError):
            logger.exception("Failed to upload audio file %s", audio_path.name)
