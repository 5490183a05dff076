"""Space Capture: live audio broadcast watcher with keyword detection.

WHY: Live audio broadcasts disappear or get trimmed once they end, and
nobody can listen to all of them. This package watches a broadcast while it
is live, captures the complete audio once it has really ended, transcribes
it, and reports where configured keywords were said.

HOW: Four layers. api/ talks to the upstream service and the playlist CDN,
core/ holds the lifecycle logic (playlist parsing, monitoring, capture
pipeline, caption scanning, per-broadcast tracker and supervisor), and
slack/ and server/ are the delivery surfaces. cli.py wires them together.

RULES:
- core/ never reads the environment; configuration arrives as WatchConfig
- Everything network- or process-bound is async
"""

__version__ = "0.1.0"
