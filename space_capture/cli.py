"""Command-line interface for Space Capture.

WHY: Most watches are started by hand ("capture this broadcast when it
ends"), and captions produced elsewhere sometimes need a keyword scan
without running a watch at all. The CLI covers both, plus running the HTTP
API.

HOW: argparse with three subcommands:
  watch <id>...  - watch one or more broadcasts until their final capture
                   ran, delivering events to Slack (when configured) or
                   printing detected phrases to stdout
  scan <file>    - keyword-scan an existing WebVTT caption file
  serve          - run the FastAPI app with uvicorn
Async work runs via asyncio.run(). Logging is configured once in main()
from --log-level or LOG_LEVEL.

RULES:
- Status output goes to stderr (via logging); phrase lines go to stdout
- watch exits once every watch finished and all queued events were handled
- Ctrl-C cancels all watches (and their previews) before exiting
- --url and --force apply to every broadcast id given
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from space_capture import __version__
from space_capture.config import DEFAULT_TAG_TEMPLATE, load_config, load_keyword_rules

logger = logging.getLogger(__name__)


def _print_event(event) -> None:
    """Fallback notifier: print detected phrases to stdout."""
    from space_capture.core.events import CaptureCompleted
    from space_capture.slack.messages import phrase_lines

    if not isinstance(event, CaptureCompleted):
        return
    header = "# {} ({}, {})".format(
        event.metadata.broadcast_id, event.mode.value, event.audio_path or "no audio"
    )
    print("\n".join([header] + phrase_lines(event.phrases)), flush=True)


async def _run_watch(args: argparse.Namespace) -> int:
    from space_capture.api.client import BroadcastApiClient, GuestTokenCredentials
    from space_capture.core.pipeline import CapturePipeline
    from space_capture.core.supervisor import WatchStatus, WatchSupervisor

    config = load_config()

    handler = _print_event
    if not args.no_slack and os.environ.get("SLACK_BOT_TOKEN"):
        from space_capture.slack.notifier import SlackNotifier

        handler = SlackNotifier.from_env(notify_playlist=args.notify_playlist).notify

    if args.force:
        logger.warning("Forced capture: broadcasts are captured without waiting for them to end")

    async with BroadcastApiClient(GuestTokenCredentials()) as client:
        supervisor = WatchSupervisor(client, CapturePipeline.from_config(config), config)
        dispatcher = asyncio.ensure_future(supervisor.dispatch_events(handler))
        try:
            records = [
                supervisor.start(broadcast_id, capture_target=args.url, force=args.force)
                for broadcast_id in dict.fromkeys(args.broadcast_ids)
            ]
            await asyncio.wait([record.task for record in records])
            await supervisor.events.join()
        finally:
            dispatcher.cancel()
            await supervisor.shutdown()
            await asyncio.wait([dispatcher])

    failed = [r.broadcast_id for r in records if r.status is WatchStatus.FAILED]
    for broadcast_id in failed:
        logger.error("Watch for %s failed", broadcast_id)
    return 1 if failed else 0


def _run_scan(args: argparse.Namespace) -> int:
    from space_capture.core.captions import scan_caption_file
    from space_capture.slack.messages import phrase_lines

    rules = load_keyword_rules(
        Path(args.keywords) if args.keywords else None,
        tag_template=args.tag_template,
    )
    phrases = scan_caption_file(Path(args.caption_file), rules, elapsed_ms=args.offset_ms)
    if phrases is None:
        logger.error("Could not read caption file %s", args.caption_file)
        return 1
    if not phrases:
        logger.info("No keywords detected in %s", args.caption_file)
        return 0
    print("\n".join(phrase_lines(phrases)), flush=True)
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    from space_capture.server.app import run_api

    run_api(host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the CLI.

    RULES:
    - Subcommand is required
    - --log-level defaults to LOG_LEVEL from the environment, else INFO
    """
    parser = argparse.ArgumentParser(
        prog="space_capture",
        description="Watch live audio broadcasts, capture them when they end, "
                    "and detect keywords in their captions.",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (default: %(default)s).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    watch = subparsers.add_parser("watch", help="Watch broadcasts until their final capture.")
    watch.add_argument("broadcast_ids", nargs="+", help="Broadcast id(s) to watch.")
    watch.add_argument(
        "--url",
        default=None,
        help="Capture this playlist URL directly instead of monitoring the broadcast.",
    )
    watch.add_argument(
        "--force",
        action="store_true",
        help="Capture right away, even if the broadcast is still live.",
    )
    watch.add_argument(
        "--no-slack",
        action="store_true",
        help="Print detected phrases instead of posting to Slack.",
    )
    watch.add_argument(
        "--notify-playlist",
        action="store_true",
        help="Also post a Slack message when the playlist url is resolved.",
    )

    scan = subparsers.add_parser("scan", help="Keyword-scan a WebVTT caption file.")
    scan.add_argument("caption_file", help="Path to the .vtt file.")
    scan.add_argument(
        "--keywords",
        default=os.getenv("KEYWORDS_FILE") or None,
        help="JSON keyword dictionary (default: KEYWORDS_FILE or the built-in list).",
    )
    scan.add_argument(
        "--tag-template",
        default=os.getenv("TAG_TEMPLATE", DEFAULT_TAG_TEMPLATE),
        help="Rendering of matched keywords, must contain {tag} (default: %(default)s).",
    )
    scan.add_argument(
        "--offset-ms",
        type=int,
        default=0,
        help="Milliseconds added to every cue start (default: %(default)s).",
    )

    serve = subparsers.add_parser("serve", help="Run the HTTP API.")
    serve.add_argument("--host", default="0.0.0.0", help="Bind address (default: %(default)s).")
    serve.add_argument("--port", type=int, default=8000, help="Port (default: %(default)s).")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for ``python -m space_capture`` and the console script.

    RULES:
    - argv=None means use sys.argv (normal CLI invocation)
    - Exits with the subcommand's status code
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if args.command == "watch":
        try:
            code = asyncio.run(_run_watch(args))
        except KeyboardInterrupt:
            logger.info("Interrupted")
            code = 130
    elif args.command == "scan":
        code = _run_scan(args)
    else:
        code = _run_serve(args)
    sys.exit(code)


if __name__ == "__main__":
    main()
