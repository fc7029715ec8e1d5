# --- Models ---
# LiteLLM format: provider/model -> context window in tokens

DEFAULT_MODEL = "anthropic/claude-sonnet-4-5-20250929"

CONTEXT_LIMITS: dict[str, int] = {
    "anthropic/claude-sonnet-4-5-20250929": 200000,
    "openai/gpt-5.2": 200000,
    "gemini/gemini-3-pro-preview": 900000,
    "gemini/gemini-3-flash-preview": 900000,
}


# --- Session Loop ---

MAX_STEPS = 50  # processor invocations per run


# --- Stream Processor ---

DOOM_LOOP_THRESHOLD = 3  # identical consecutive tool calls before asking
DOOM_LOOP_PERMISSION = "doom_loop"

RETRY_MAX_ATTEMPTS = 5
RETRY_BASE_DELAY = 2.0  # seconds
RETRY_MAX_DELAY = 60.0  # seconds
RETRY_JITTER = 0.2  # +/- fraction of the computed delay


# --- Context Compaction ---

OVERFLOW_RATIO = 0.9  # share of the context window that triggers compaction
COMPACTION_KEEP_RECENT = 10  # messages kept verbatim
PRUNE_PROTECT_TOKENS = 40000  # newest tool output kept intact
PRUNE_MINIMUM_TOKENS = 20000  # prune only if it frees at least this much
PRUNE_PROTECT_TURNS = 2  # most recent user turns never pruned
CHARS_PER_TOKEN = 4  # rough char-to-token ratio for estimation
MESSAGE_OVERHEAD_CHARS = 16


# --- Display Truncation ---

ERROR_PREVIEW_CHARS = 500
