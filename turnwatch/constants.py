"""Turnwatch constants: selectors, placeholder markers and timing defaults."""

# Conversation structure. Each entry is tried in order by the page-side extractor.
CONVERSATION_TURN_SELECTOR = (
    'article[data-testid^="conversation-turn"], div[data-testid^="conversation-turn"], '
    'section[data-testid^="conversation-turn"], '
    "article[data-message-author-role], div[data-message-author-role], "
    "section[data-message-author-role], "
    "article[data-turn], div[data-turn], section[data-turn], "
    'div[class*="message-bubble"]'
)

ASSISTANT_ROLE_SELECTOR = (
    '[data-message-author-role="assistant"], [data-turn="assistant"], .message-assistant, '
    ".message-bubble:not(.bg-surface-l1):not(.text-primary-inverse)"
)

USER_ROLE_SELECTOR = '[data-message-author-role="user"], [data-turn="user"]'

# Preferred text carriers inside an assistant turn, most specific first.
MARKDOWN_BODY_SELECTORS = [
    ".markdown",
    ".response-content-markdown",
    "[data-message-content]",
    ".prose",
]

# Regions that must never be picked as the content root by the loose fallback.
CONTENT_ROOT_EXCLUDE_SELECTOR = (
    'nav, aside, form, [role="navigation"], [data-testid*="sidebar"], '
    '[class*="sidebar"], [data-testid*="composer"], [id*="composer"]'
)

CONTENT_ROOT_CANDIDATE_SELECTOR = (
    'main, [role="main"], section, div[class*="thread"], div[class*="conversation"], '
    'div[class*="chat"]'
)

STOP_BUTTON_SELECTOR = (
    '[data-testid="stop-button"], button[aria-label*="Stop"], '
    'button[aria-label*="Cancel"], button[aria-label*="Abort"]'
)

# Action buttons that only render once a turn has finished streaming.
FINISHED_ACTIONS_SELECTOR = (
    'button[data-testid="copy-turn-action-button"], '
    'button[data-testid="good-response-turn-action-button"], '
    'button[data-testid="bad-response-turn-action-button"], '
    'button[aria-label="Share"], button[aria-label="Copy"], button[aria-label*="Copy"], '
    'button[aria-label="Regenerate"]'
)

COPY_BUTTON_SELECTOR = (
    'button[data-testid="copy-turn-action-button"], button[aria-label="Copy"], '
    'button[aria-label*="Copy"]'
)

SEND_BUTTON_SELECTORS = [
    'button[data-testid="send-button"]',
    'button[data-testid*="composer-send"]',
    'form button[type="submit"]',
    'button[type="submit"][data-testid*="send"]',
    'button[aria-label*="Send"]',
    'button[aria-label="Submit"]',
]

UPLOAD_STATUS_SELECTORS = [
    '[data-testid*="upload"]',
    '[data-testid*="attachment"]',
    '[data-testid*="progress"]',
    '[data-state="loading"]',
    '[data-state="uploading"]',
    '[data-state="pending"]',
    '[aria-live="polite"]',
    '[aria-live="assertive"]',
]

ATTACHMENT_CHIP_SELECTORS = [
    '[data-testid*="attachment"]',
    '[data-testid*="chip"]',
    '[data-testid*="upload"]',
    '[data-testid*="file-tile"]',
]

# Attribute used to tag file inputs so DOM.querySelector can resolve them.
UPLOAD_TARGET_ATTRIBUTE = "data-turnwatch-upload-idx"

# ---------------------------------------------------------------------------
# Placeholder markers (lower-case; matched as substrings after trimming)
# ---------------------------------------------------------------------------

ROLE_ECHO_LABELS = (
    "assistant",
    "assistant said",
    "chatgpt",
    "chatgpt said",
    "grok",
    "grok said",
)
UPLOAD_REQUEST_MARKERS = ("upload request",)
THINKING_MARKERS = ("pro thinking", "thinking", "reasoning")
ANSWER_NOW_MARKERS = ("answer now",)

# Exact status label that signals a finished turn.
DONE_MARKER = "Done"

# ---------------------------------------------------------------------------
# Stability buckets: (max_length_exclusive, required_cycles, min_stable_ms, completion_target)
# ---------------------------------------------------------------------------

SHORT_MAX_LENGTH = 16
MEDIUM_MAX_LENGTH = 40
LONG_MAX_LENGTH = 500

SHORT_REQUIRED_CYCLES = 12
MEDIUM_REQUIRED_CYCLES = 8
LONG_REQUIRED_CYCLES = 8
OTHER_REQUIRED_CYCLES = 10

SHORT_MIN_STABLE_MS = 8000
MEDIUM_MIN_STABLE_MS = 1200
LONG_MIN_STABLE_MS = 2000
OTHER_MIN_STABLE_MS = 3000

SHORT_COMPLETION_TARGET = 12
MEDIUM_COMPLETION_TARGET = 4
LONG_COMPLETION_TARGET = 4
OTHER_COMPLETION_TARGET = 6

# Content-root scoring weights for the loose extractor fallback.
ACTION_BUTTON_WEIGHT = 10
ASSISTANT_ROLE_WEIGHT = 5
MARKDOWN_NODE_WEIGHT = 1

# ---------------------------------------------------------------------------
# Timing defaults (milliseconds)
# ---------------------------------------------------------------------------

DEFAULT_RESPONSE_TIMEOUT_MS = 120_000
DEFAULT_POLL_INTERVAL_MS = 400
DEFAULT_WATCH_TICK_MS = 500
DEFAULT_MUTATION_BURST_MS = 100
DEFAULT_EVAL_TIMEOUT_MS = 10_000
POST_CAPTURE_REFRESH_MS = 5_000
RECOVERY_SETTLE_MS = 3_000
MAX_CONSECUTIVE_ERRORS = 5

DEFAULT_ATTACHMENT_TIMEOUT_MS = 30_000
ATTACHMENT_TARGET_WINDOW_MS = 5_000
ATTACHMENT_POLL_INTERVAL_MS = 250
ATTACHMENT_STABLE_CYCLES = 3
ATTACHMENT_MIN_STABLE_MS = 600
ATTACHMENT_UPLOADING_STABLE_CYCLES = 6
MAX_DATA_TRANSFER_BYTES = 25 * 1024 * 1024

# Diagnostic dumps keep only the most recent turns.
DEBUG_RECENT_TURNS = 3
DEBUG_TURN_TEXT_CHARS = 200

# Stage tags carried by ConvergenceTimeout.
ASSISTANT_RESPONSE_TIMEOUT = "assistant-response-timeout"
ATTACHMENT_NOT_REGISTERED = "attachment-not-registered"
ATTACHMENT_UPLOAD_TIMEOUT = "attachment-upload-timeout"
USER_TURN_ATTACHMENT_TIMEOUT = "user-turn-attachment-timeout"
