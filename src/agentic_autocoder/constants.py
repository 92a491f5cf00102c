"""Constants for the autocoder runner."""

import os

# Default models; override per role via AUTOCODER_*_MODEL env vars
DEFAULT_PLANNER_MODEL = "openai/o3-mini"
DEFAULT_STEP_MODEL = "openai/o3-mini"
DEFAULT_DIAGNOSIS_MODEL = "openai/o3-mini"

DEFAULT_REASONING_EFFORT = "medium"

# Retry controller bounds
MAX_RETRIES = 50
RETRY_DELAY_S = 2.0

# Pause between plan steps
STEP_DELAY_S = 1.0

DEFAULT_REQUEST_TIMEOUT_S = float(os.getenv("AUTOCODER_REQUEST_TIMEOUT_S", "120"))

# Foreground command output cap (per stream), matches a 10 MB exec buffer
MAX_OUTPUT_BYTES = 10 * 1024 * 1024

# Forced on top of the inherited process environment for every command
FORCED_COMMAND_ENV = {
    "FORCE_COLOR": "1",
    "PYTHONIOENCODING": "utf-8",
    "LANG": "en_US.UTF-8",
}

DEFAULT_REPORTS_DIR = "execution/reports"
