"""Caption scanning: keyword rule table, WebVTT cue reading, phrase tagging.

WHY: The transcription tool writes a timed caption file. Downstream
consumers want to know *when* in the broadcast a watched keyword was said,
with every misspelling the speech model produces normalized to one
canonical tag. This module turns a cue stream into that phrase feed.

HOW: Three pieces:
  KeywordRule / build_rule_table - canonical tag + aliases compiled once
      into a single case-insensitive alternation
  read_caption_file             - WebVTT → CaptionCue list via webvtt-py
  scan_cues / scan_caption_file - clean each cue, tag matches, shift
      timestamps to broadcast time

RULES:
- Noise characters . , # ! ^ ; : { } = _ ` ~ ( ) are stripped before matching
- Every alias of a rule renders identically (the rule's rendered tag)
- One CaptionPhrase per cue, matched or not, in cue order
- The phrase list is returned only if at least one cue matched; else []
- Timestamps are cue start + elapsed_ms (0 for captures that begin at
  broadcast start)
- Scanning is pure: the same cues and rules always give the same phrases
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import webvtt
from webvtt.errors import MalformedFileError

logger = logging.getLogger(__name__)

NOISE_CHARS_RE = re.compile(r"[.,#!\^;:{}=_`~()]")


# ---------------------------------------------------------------------------
# Keyword rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KeywordRule:
    """A canonical keyword tag and the compiled pattern for all its aliases.

    RULES:
    - tag: canonical name every alias is normalized to
    - aliases: spellings as configured (kept for display and config export)
    - pattern: case-insensitive alternation of the escaped aliases
    - rendered: markup substituted for any alias match (e.g. "*AFPAC*")
    """

    tag: str
    aliases: Tuple[str, ...]
    pattern: "re.Pattern[str]"
    rendered: str


def compile_rule(tag: str, aliases: Iterable[str], tag_template: str = "*{tag}*") -> KeywordRule:
    """Compile one keyword rule.

    Longer aliases are tried first so "Nick Fuentes" wins over "Fuentes"
    when both are configured for the same tag.
    """
    cleaned = tuple(a for a in (alias.strip() for alias in aliases) if a)
    if not cleaned:
        raise ValueError("Keyword rule {!r} has no aliases".format(tag))
    ordered = sorted(set(cleaned), key=lambda a: (-len(a), a))
    pattern = re.compile("|".join(re.escape(a) for a in ordered), re.IGNORECASE)
    return KeywordRule(
        tag=tag,
        aliases=cleaned,
        pattern=pattern,
        rendered=tag_template.format(tag=tag),
    )


def build_rule_table(
    entries: Iterable[Tuple[str, Iterable[str]]],
    tag_template: str = "*{tag}*",
) -> Tuple[KeywordRule, ...]:
    """Build the precompiled rule table from (tag, aliases) pairs.

    WHY: Compiling once at startup keeps the scanner free of regex
    construction and lets the table be tested on its own.

    RULES:
    - Rule order is preserved; it decides tag order on multi-match cues
    - Raises ValueError on a rule with no non-blank alias
    """
    return tuple(compile_rule(tag, aliases, tag_template) for tag, aliases in entries)


# ---------------------------------------------------------------------------
# Cues and phrases
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CaptionCue:
    """One timed caption cue (offsets in milliseconds from file start)."""

    start_ms: int
    end_ms: int
    text: str


@dataclass(frozen=True)
class CaptionPhrase:
    """A scanned cue placed on the broadcast timeline.

    RULES:
    - timestamp_ms: milliseconds since broadcast start (comparable across
      preview and final captures)
    - text: cue text with noise characters stripped
    - tags: canonical tags that matched, in rule-table order
    - markup: text with matched aliases replaced by rendered tags, or None
    """

    timestamp_ms: int
    text: str
    tags: Tuple[str, ...] = ()
    markup: Optional[str] = None

    @property
    def matched(self) -> bool:
        return bool(self.tags)

    @property
    def tag(self) -> Optional[str]:
        return self.tags[0] if self.tags else None

    @property
    def display_text(self) -> str:
        return self.markup if self.markup is not None else self.text


def clean_cue_text(text: str) -> str:
    """Strip noise characters and collapse caption line breaks."""
    return NOISE_CHARS_RE.sub("", " ".join(text.split()))


def tag_text(text: str, rules: Sequence[KeywordRule]) -> Tuple[Tuple[str, ...], Optional[str]]:
    """Apply every rule to already-cleaned text.

    Returns:
        (matched tags, marked-up text or None if nothing matched).
    """
    tags: List[str] = []
    markup = text
    for rule in rules:
        if rule.pattern.search(markup):
            markup = rule.pattern.sub(lambda _m, r=rule.rendered: r, markup)
            tags.append(rule.tag)
    if not tags:
        return (), None
    return tuple(tags), markup


def scan_cues(
    cues: Iterable[CaptionCue],
    rules: Sequence[KeywordRule],
    elapsed_ms: int = 0,
) -> List[CaptionPhrase]:
    """Scan a cue stream for keyword phrases.

    WHY: A phrase list is only worth delivering when something matched,
    but when it is delivered the surrounding unmatched cues give readers
    context, so every cue is kept.

    HOW: Cleans each cue, tags it against every rule, and shifts its start
    offset by elapsed_ms onto broadcast time. Tracks whether any cue in the
    whole stream matched.

    RULES:
    - Returns every phrase (matched and unmatched) if any cue matched
    - Returns [] if no cue matched
    - Cues are consumed strictly in order, one at a time

    Args:
        cues: Timed cues in file order.
        rules: Precompiled keyword rule table.
        elapsed_ms: Offset from broadcast start to capture start.

    Returns:
        Ordered CaptionPhrase list, or [] when nothing matched.
    """
    phrases: List[CaptionPhrase] = []
    any_match = False

    for cue in cues:
        text = clean_cue_text(cue.text)
        tags, markup = tag_text(text, rules)
        if tags:
            any_match = True
        phrases.append(
            CaptionPhrase(
                timestamp_ms=cue.start_ms + elapsed_ms,
                text=text,
                tags=tags,
                markup=markup,
            )
        )

    return phrases if any_match else []


# ---------------------------------------------------------------------------
# WebVTT reading
# ---------------------------------------------------------------------------


def parse_timestamp_ms(value: str) -> int:
    """Convert a WebVTT timestamp (HH:MM:SS.mmm or MM:SS.mmm) to milliseconds."""
    parts = value.strip().replace(",", ".").split(":")
    if len(parts) == 2:
        parts.insert(0, "0")
    if len(parts) != 3:
        raise ValueError("Invalid caption timestamp: {!r}".format(value))
    hours, minutes = int(parts[0]), int(parts[1])
    seconds = float(parts[2])
    return int(round(((hours * 60 + minutes) * 60 + seconds) * 1000))


def read_caption_file(path: Path) -> List[CaptionCue]:
    """Read a WebVTT file into CaptionCue objects.

    RULES:
    - Raises FileNotFoundError when the file is absent
    - Raises webvtt errors for files that are not valid WebVTT
    """
    cues: List[CaptionCue] = []
    for caption in webvtt.read(str(path)):
        cues.append(
            CaptionCue(
                start_ms=parse_timestamp_ms(caption.start),
                end_ms=parse_timestamp_ms(caption.end),
                text=caption.text,
            )
        )
    return cues


def scan_caption_file(
    path: Path,
    rules: Sequence[KeywordRule],
    elapsed_ms: int = 0,
) -> Optional[List[CaptionPhrase]]:
    """Read and scan a caption file.

    WHY: A missing or unreadable caption file is a soft failure of the
    transcription step, not a crash of the watch loop.

    RULES:
    - Returns None when the file is missing or cannot be parsed (logged)
    - Otherwise returns scan_cues() of its cues (possibly [])
    """
    path = Path(path)
    if not path.is_file():
        logger.error("Captions file '%s' not found", path)
        return None

    try:
        cues = read_caption_file(path)
    except (OSError, ValueError, MalformedFileError) as exc:
        logger.error("Failed to process captions %s: %s", path, exc)
        return None

    phrases = scan_cues(cues, rules, elapsed_ms)
    last_end_ms = max((cue.end_ms for cue in cues), default=0)
    logger.debug(
        "Captions scanned [%d lines/%.1fs], %d phrases",
        len(cues),
        last_end_ms / 1000.0,
        len(phrases),
    )
    return phrases


def format_timestamp(ms: int) -> str:
    """Render milliseconds as HH:MM:SS for the phrase feed."""
    total = max(0, int(ms)) // 1000
    hours = total // 3600
    minutes = (total % 3600) // 60
    seconds = total % 60
    return "{:02d}:{:02d}:{:02d}".format(hours, minutes, seconds)
