"""Broadcast lifecycle core: parsing, monitoring, capture and tracking.

WHY: Deciding when a broadcast has really ended and turning its audio into
an annotated phrase list is the heart of the service. Keeping it free of
environment access and delivery concerns makes each piece testable with
fakes.

HOW: playlist.py and captions.py are pure functions. job.py is the capture
stage state machine, pipeline.py runs the external stages, monitor.py turns
playlist polling into lifecycle signals, tracker.py drives one broadcast
and supervisor.py runs many.

RULES:
- No module here imports space_capture.config at runtime
- Upstream and process failures end as loop continuations or failed
  CaptureResults, never as a dead watch
"""
