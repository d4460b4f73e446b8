import os
from pathlib import Path

# Shared secret for host endpoints (empty = dev mode, unprotected)
QUIZ_AUTH_SECRET = os.environ.get("QUIZ_AUTH_SECRET", "")

# Copilot CLI
QUIZ_COPILOT_MODEL = os.environ.get("QUIZ_COPILOT_MODEL", "gpt-4.1")
COPILOT_CLI_PATH = os.environ.get("COPILOT_CLI_PATH", "")
COPILOT_TIMEOUT_SECONDS = int(os.environ.get("COPILOT_TIMEOUT_SECONDS", 120))

# Serper web search
SERPER_API_KEY = os.environ.get("SERPER_API_KEY", "")
SERPER_URL = os.environ.get("SERPER_URL", "https://google.serper.dev/search")
SERPER_RESULTS = int(os.environ.get("SERPER_RESULTS", 3))

# The agent needs room for a few searches before it must generate
QUIZ_AGENT_MAX_STEPS = max(6, int(os.environ.get("QUIZ_AGENT_MAX_STEPS", 6)))

QUIZ_MAX_PLAYERS = int(os.environ.get("QUIZ_MAX_PLAYERS", 50))

LOG_DIR = Path(os.environ.get("QUIZ_LOG_DIR", Path(__file__).parent / "logs"))

HOST_FINGERPRINT = "host"
MAX_EVENTS_PER_SESSION = 100
