"""
PromptQuiz Backend Logging
==========================
Rotating file-based logging plus two JSONL streams. Logs are written to
backend/logs/ (override with QUIZ_LOG_DIR).

Log files produced:
  - promptquiz.log         General backend log (all levels)
  - copilot.log            Copilot CLI call details (prompts, responses, timing)
  - token_usage.jsonl      One JSON object per Copilot call, for spend analysis
  - game_events.jsonl      Structured game events (phases, players, answers, AI outcomes)
"""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any

from config import LOG_DIR

# ---------------------------------------------------------------------------
# Request / Correlation ID
# ---------------------------------------------------------------------------

_request_id: ContextVar[str] = ContextVar("request_id", default="-")


def set_request_id(rid: str | None = None) -> str:
    """Set a correlation ID for the current request context. Returns the ID."""
    rid = rid or uuid.uuid4().hex[:12]
    _request_id.set(rid)
    return rid


def get_request_id() -> str:
    return _request_id.get("-")

# ---------------------------------------------------------------------------
# Formatters / handlers
# ---------------------------------------------------------------------------

_VERBOSE_FMT = logging.Formatter(
    fmt="%(asctime)s | %(levelname)-8s | %(name)-24s | [%(request_id)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    defaults={"request_id": "-"},
)

_CONSOLE_FMT = logging.Formatter(
    fmt="%(asctime)s | %(levelname)s | %(message)s",
    datefmt="%H:%M:%S",
)


def _rotating_handler(
    filename: str,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 5,
    level: int = logging.DEBUG,
    raw: bool = False,
) -> RotatingFileHandler:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        LOG_DIR / filename,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    # JSONL lines are written bare
    handler.setFormatter(logging.Formatter("%(message)s") if raw else _VERBOSE_FMT)
    return handler


class _RequestIdFilter(logging.Filter):
    """Inject the current request_id context var into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()  # type: ignore[attr-defined]
        return True


_CONFIGURED = False


def setup_logging(*, console_level: int = logging.INFO) -> None:
    """Initialise all loggers.  Safe to call more than once."""
    global _CONFIGURED
    if _CONFIGURED:
        return
    _CONFIGURED = True

    rid_filter = _RequestIdFilter()

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    console = logging.StreamHandler()
    console.setLevel(console_level)
    console.setFormatter(_CONSOLE_FMT)
    console.addFilter(rid_filter)
    root.addHandler(console)

    general = _rotating_handler("promptquiz.log")
    general.addFilter(rid_filter)
    root.addHandler(general)

    copilot_logger = logging.getLogger("copilot")
    copilot_file = _rotating_handler("copilot.log")
    copilot_file.addFilter(rid_filter)
    copilot_logger.addHandler(copilot_file)

    token_logger = logging.getLogger("copilot.tokens")
    token_logger.addHandler(_rotating_handler(
        "token_usage.jsonl", max_bytes=10 * 1024 * 1024, backup_count=10, raw=True,
    ))
    token_logger.propagate = False  # don't echo raw JSON to console

    game_logger = logging.getLogger("game.events")
    game_logger.addHandler(_rotating_handler(
        "game_events.jsonl", max_bytes=10 * 1024 * 1024, backup_count=10, raw=True,
    ))
    game_logger.propagate = False

    logging.getLogger("PromptQuiz").info(
        f"📁 Logging initialised – log directory: {LOG_DIR.resolve()}"
    )


def get_logger(name: str = "PromptQuiz") -> logging.Logger:
    return logging.getLogger(name)


def get_copilot_logger() -> logging.Logger:
    return logging.getLogger("copilot")


def get_token_logger() -> logging.Logger:
    return logging.getLogger("copilot.tokens")


def get_game_event_logger() -> logging.Logger:
    return logging.getLogger("game.events")

# ---------------------------------------------------------------------------
# Structured game events
# ---------------------------------------------------------------------------

def log_game_event(
    event_type: str,
    *,
    session_id: str | None = None,
    player_id: str | None = None,
    round_id: str | None = None,
    data: dict[str, Any] | None = None,
) -> None:
    """Write one JSON line to game_events.jsonl."""
    record: dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": event_type,
        "request_id": get_request_id(),
    }
    if session_id:
        record["session"] = session_id
    if player_id:
        record["player_id"] = player_id
    if round_id:
        record["round_id"] = round_id
    if data:
        record.update(data)
    get_game_event_logger().info(json.dumps(record, default=str))

# ---------------------------------------------------------------------------
# Copilot call tracking
# ---------------------------------------------------------------------------

class CopilotCallTracker:
    """Times a Copilot CLI call and logs its usage."""

    def __init__(
        self,
        *,
        endpoint: str,
        model: str,
        prompt_chars: int = 0,
        extra: dict[str, Any] | None = None,
    ):
        self.endpoint = endpoint
        self.model = model
        self.prompt_chars = prompt_chars
        self.extra = extra or {}
        self._start: float = 0.0
        self._finished = False
        self._log = get_copilot_logger()

    def start(self) -> "CopilotCallTracker":
        self._start = time.time()
        self._log.info(
            "┌─ Copilot call START  endpoint=%s  model=%s  prompt_chars=%d",
            self.endpoint, self.model, self.prompt_chars,
        )
        return self

    def finish(
        self,
        *,
        response_chars: int = 0,
        success: bool = True,
        error: str | None = None,
        exit_code: int | None = None,
        stderr_text: str = "",
        stdout_text: str = "",
    ) -> dict[str, Any]:
        if self._finished:
            return {}
        self._finished = True
        elapsed_ms = int((time.time() - self._start) * 1000)

        usage = _extract_token_usage(stderr_text, stdout_text)
        if not usage:
            # ~4 chars per token
            usage = {
                "estimated": True,
                "prompt_tokens_est": self.prompt_chars // 4,
                "completion_tokens_est": response_chars // 4,
            }
            usage["total_tokens_est"] = usage["prompt_tokens_est"] + usage["completion_tokens_est"]

        record: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "endpoint": self.endpoint,
            "model": self.model,
            "prompt_chars": self.prompt_chars,
            "response_chars": response_chars,
            "elapsed_ms": elapsed_ms,
            "success": success,
            "exit_code": exit_code,
            "error": error,
            "token_usage": usage,
            **self.extra,
        }
        get_token_logger().info(json.dumps(record, default=str))

        status = "OK" if success else f"FAIL ({error})"
        self._log.info(
            "└─ Copilot call END    endpoint=%s  status=%s  %dms  response=%d chars",
            self.endpoint, status, elapsed_ms, response_chars,
        )
        return record


def _extract_token_usage(stderr: str, stdout: str) -> dict[str, Any]:
    """Best-effort scrape of ``prompt_tokens: N`` style lines from CLI output."""
    usage: dict[str, Any] = {}
    combined = (stderr or "") + "\n" + (stdout or "")
    for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
        match = re.search(rf"{key}\s*[:=]\s*(\d+)", combined, re.IGNORECASE)
        if match:
            usage[key] = int(match.group(1))
    if usage and "total_tokens" not in usage:
        usage["total_tokens"] = usage.get("prompt_tokens", 0) + usage.get("completion_tokens", 0)
    return usage


def summarize_token_usage(since_hours: float = 24) -> dict[str, Any]:
    """Parse token_usage.jsonl and return aggregate stats."""
    jsonl_path = LOG_DIR / "token_usage.jsonl"
    if not jsonl_path.exists():
        return {"error": "No token_usage.jsonl found", "calls": 0}

    cutoff = time.time() - since_hours * 3600
    total_calls = 0
    errors = 0
    total_tokens = 0
    total_elapsed_ms = 0
    endpoint_counts: dict[str, int] = {}

    with open(jsonl_path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                rec = json.loads(line)
                ts = datetime.fromisoformat(rec.get("timestamp", "")).timestamp()
            except (json.JSONDecodeError, ValueError, TypeError):
                continue
            if ts < cutoff:
                continue
            total_calls += 1
            usage = rec.get("token_usage") or {}
            total_tokens += usage.get("total_tokens", usage.get("total_tokens_est", 0))
            total_elapsed_ms += rec.get("elapsed_ms", 0)
            if not rec.get("success"):
                errors += 1
            ep = rec.get("endpoint", "unknown")
            endpoint_counts[ep] = endpoint_counts.get(ep, 0) + 1

    return {
        "period_hours": since_hours,
        "total_calls": total_calls,
        "failed_calls": errors,
        "error_rate_pct": round(errors / max(total_calls, 1) * 100, 1),
        "total_tokens": total_tokens,
        "avg_elapsed_ms": total_elapsed_ms // max(total_calls, 1),
        "endpoint_breakdown": endpoint_counts,
    }
