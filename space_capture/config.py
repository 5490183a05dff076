"""Configuration defaults, keyword dictionary, and .env loading.

WHY: Every tunable of the watch loop (poll interval, finalize retry budget,
preview length, speech model tiers, media directory) and the keyword
dictionary must be easy to find and override. Components never read these
globals directly; they receive a read-only WatchConfig at construction.

HOW: python-dotenv loads the .env file on import. Module-level defaults are
read from environment variables. load_config() assembles them (plus any
explicit overrides) into a frozen WatchConfig. The keyword dictionary comes
from a JSON file validated with jsonschema, or the built-in DEFAULT_KEYWORDS.

RULES:
- WatchConfig is frozen; nothing in the core mutates configuration
- Numeric environment values are validated; bad values raise ValueError
- Keyword files are a JSON list of {"tag": str, "aliases": [str, ...]}
- Keyword rules are compiled once here and passed down as a tuple
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import jsonschema
from dotenv import load_dotenv

from space_capture.core.captions import KeywordRule, build_rule_table

load_dotenv()

# ---------------------------------------------------------------------------
# Upstream API
# ---------------------------------------------------------------------------

TWITTER_API_BASE_URL = os.getenv("TWITTER_API_BASE_URL", "https://twitter.com/i/api")
TWITTER_GUEST_ACTIVATE_URL = os.getenv(
    "TWITTER_GUEST_ACTIVATE_URL", "https://api.twitter.com/1.1/guest/activate.json"
)
TWITTER_AUTHORIZATION = os.getenv("TWITTER_AUTHORIZATION", "")
AUDIO_SPACE_BY_ID_QUERY_ID = os.getenv("AUDIO_SPACE_BY_ID_QUERY_ID", "xVEzTKg_mLTHubK5ayL0HA")

# ---------------------------------------------------------------------------
# Watch loop defaults (seconds unless noted)
# ---------------------------------------------------------------------------

DEFAULT_POLL_INTERVAL_S = 10.0
DEFAULT_ERROR_RETRY_INTERVAL_S = 10.0
DEFAULT_FINALIZE_MAX_RETRIES = 3
DEFAULT_PREVIEW_SECONDS = 30
DEFAULT_PREVIEW_MODEL = "base.en"
DEFAULT_FINAL_MODEL = "small.en"
DEFAULT_NOTIFY_CONCURRENCY = 2
DEFAULT_TAG_TEMPLATE = "*{tag}*"

# ---------------------------------------------------------------------------
# Keyword dictionary
# ---------------------------------------------------------------------------

DEFAULT_KEYWORDS: List[Dict[str, Any]] = [
    {"tag": "NJF", "aliases": ["NJF", "N J F"]},
    {"tag": "Nick Fuentes", "aliases": [
        "Fuentes", "Nick Fuentes", "Nicholas Fuentes", "Nicholas J Fuentes",
    ]},
    {"tag": "AFPAC", "aliases": ["AFPAC", "AFPAK", "F Pack"]},
    {"tag": "groyper", "aliases": [
        "groyper", "groypur", "groipper", "groiper", "grouper",
        "gripper", "graper", "griper", "criper",
    ]},
    {"tag": "cozy.tv", "aliases": ["Cozy TV", "Cozy Dot TV", "CozyTV"]},
    {"tag": "Bronze Age", "aliases": ["Bronze Age"]},
    {"tag": "Claremont", "aliases": ["Claremont", "Clairmont", "Claremount"]},
    {"tag": "NatCon", "aliases": [
        "National Conservatism", "National Conservative", "NatCon", "Nacon", "Nakon",
    ]},
    {"tag": "ACTIVATION PHRASE", "aliases": [
        "Where's my keys", "Where is my keys", "Where are my keys",
    ]},
    {"tag": "Goose", "aliases": ["Goose"]},
    {"tag": "Spoods", "aliases": ["Spoods", "Spoons", "Spoodz", "Spooz", "Spuz", "Spoos"]},
    {"tag": "Chief Trumpster", "aliases": ["Chief Trumpster", "Chief Trump", "Chief Chumster"]},
]

KEYWORDS_SCHEMA: Dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "required": ["tag", "aliases"],
        "properties": {
            "tag": {"type": "string", "minLength": 1},
            "aliases": {
                "type": "array",
                "minItems": 1,
                "items": {"type": "string", "minLength": 1},
            },
        },
        "additionalProperties": False,
    },
}


def load_keyword_rules(
    path: Optional[Path] = None,
    tag_template: str = DEFAULT_TAG_TEMPLATE,
) -> Tuple[KeywordRule, ...]:
    """Load and compile the keyword dictionary.

    WHY: Operators maintain their own alias lists (speech models misspell
    names in many ways). A JSON file is easy to edit; the schema check
    gives a clear error instead of a confusing regex failure later.

    HOW: Reads the file (or falls back to DEFAULT_KEYWORDS), validates it
    against KEYWORDS_SCHEMA, and builds the precompiled rule table.

    RULES:
    - path=None uses DEFAULT_KEYWORDS
    - Raises jsonschema.ValidationError for malformed dictionaries
    - Raises FileNotFoundError if an explicit path does not exist
    """
    if path is None:
        entries = DEFAULT_KEYWORDS
    else:
        entries = json.loads(Path(path).read_text(encoding="utf-8"))

    jsonschema.validate(instance=entries, schema=KEYWORDS_SCHEMA)
    pairs = [(entry["tag"], entry["aliases"]) for entry in entries]
    return build_rule_table(pairs, tag_template=tag_template)


# ---------------------------------------------------------------------------
# WatchConfig
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WatchConfig:
    """Read-only settings injected into the tracker, monitor, and pipeline.

    RULES:
    - poll_interval: seconds between dynamic/master playlist checks
    - error_retry_interval: fixed delay before retrying a failed watch cycle
    - finalize_max_retries: master playlist re-checks before forcing finalize
    - preview_seconds: duration cap for live preview extraction
    - preview_model / final_model: transcription quality tiers
    - media_dir: root directory for audio and caption artifacts
    """

    poll_interval: float = DEFAULT_POLL_INTERVAL_S
    error_retry_interval: float = DEFAULT_ERROR_RETRY_INTERVAL_S
    finalize_max_retries: int = DEFAULT_FINALIZE_MAX_RETRIES
    preview_seconds: int = DEFAULT_PREVIEW_SECONDS
    preview_model: str = DEFAULT_PREVIEW_MODEL
    final_model: str = DEFAULT_FINAL_MODEL
    media_dir: Path = Path("media")
    ffmpeg_bin: str = "ffmpeg"
    whisper_bin: str = "whisper"
    notify_concurrency: int = DEFAULT_NOTIFY_CONCURRENCY
    keyword_rules: Tuple[KeywordRule, ...] = field(default_factory=tuple)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError("{} must be a number, got {!r}".format(name, raw))
    if value < 0:
        raise ValueError("{} must not be negative, got {}".format(name, value))
    return value


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError("{} must be an integer, got {!r}".format(name, raw))
    if value < 0:
        raise ValueError("{} must not be negative, got {}".format(name, value))
    return value


def load_config(**overrides: Any) -> WatchConfig:
    """Build a WatchConfig from the environment plus explicit overrides.

    WHY: The CLI and the HTTP server both need the same settings, and tests
    need to pin values (poll_interval=0) without touching the environment.

    HOW: Reads each setting from its environment variable (falling back to
    the module default), loads the keyword file named by KEYWORDS_FILE,
    then applies keyword overrides with dataclasses.replace().

    RULES:
    - Overrides win over environment values
    - KEYWORDS_FILE unset → built-in DEFAULT_KEYWORDS
    - TAG_TEMPLATE must contain "{tag}"
    """
    tag_template = os.getenv("TAG_TEMPLATE", DEFAULT_TAG_TEMPLATE)
    if "{tag}" not in tag_template:
        raise ValueError("TAG_TEMPLATE must contain '{{tag}}', got {!r}".format(tag_template))

    keywords_file = os.getenv("KEYWORDS_FILE", "").strip()
    keyword_rules = load_keyword_rules(
        Path(keywords_file) if keywords_file else None,
        tag_template=tag_template,
    )

    config = WatchConfig(
        poll_interval=_env_float("PLAYLIST_REFRESH_INTERVAL", DEFAULT_POLL_INTERVAL_S),
        error_retry_interval=_env_float(
            "SPACE_ERROR_RETRY_INTERVAL", DEFAULT_ERROR_RETRY_INTERVAL_S
        ),
        finalize_max_retries=_env_int(
            "PLAYLIST_CHUNK_VERIFY_MAX_RETRY", DEFAULT_FINALIZE_MAX_RETRIES
        ),
        preview_seconds=_env_int("LIVE_PREVIEW_SECONDS", DEFAULT_PREVIEW_SECONDS),
        preview_model=os.getenv("WHISPER_PREVIEW_MODEL", DEFAULT_PREVIEW_MODEL),
        final_model=os.getenv("WHISPER_FINAL_MODEL", DEFAULT_FINAL_MODEL),
        media_dir=Path(os.getenv("MEDIA_DIR", "media")),
        ffmpeg_bin=os.getenv("FFMPEG_BIN", "ffmpeg"),
        whisper_bin=os.getenv("WHISPER_BIN", "whisper"),
        notify_concurrency=max(1, _env_int("NOTIFY_CONCURRENCY", DEFAULT_NOTIFY_CONCURRENCY)),
        keyword_rules=keyword_rules,
    )
    return replace(config, **overrides) if overrides else config


def load_twitter_authorization() -> str:
    """Load the upstream bearer authorization from the environment.

    RULES:
    - Raises ValueError if TWITTER_AUTHORIZATION is missing or empty
    - A bare token gets the "Bearer " prefix added
    """
    value = os.getenv("TWITTER_AUTHORIZATION", TWITTER_AUTHORIZATION).strip()
    if not value:
        raise ValueError(
            "Upstream authorization not configured. "
            "Add TWITTER_AUTHORIZATION to the .env file."
        )
    if not value.lower().startswith("bearer "):
        value = "Bearer " + value
    return value
