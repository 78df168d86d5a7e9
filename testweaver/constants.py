"""Step vocabulary, selector synonyms, protocol message types, and server capabilities."""

# ── Step Vocabulary ──────────────────────────────────────────────────────────

STEP_ACTIONS = (
    "navigate",
    "click",
    "fill",
    "select",
    "wait",
    "verify",
    "hover",
    "pressKey",
    "screenshot",
    "custom",
)

# Aliases accepted by the generator in addition to STEP_ACTIONS
ACTION_ALIASES = {
    "goto": "navigate",
    "visit": "navigate",
    "type": "fill",
    "enter": "fill",
    "check": "verify",
    "assert": "verify",
    "press": "pressKey",
}

# Generic nouns that let an assertion build its selector from the value
GENERIC_ASSERTION_NOUNS = {
    "link": "a",
    "button": "button",
    "element": None,
}

# ── Selector Synonyms ────────────────────────────────────────────────────────

# Matched by case-insensitive substring, in this order.
SELECTOR_SYNONYMS = {
    "login button": '[data-testid="login-button"], button:has-text("login"), input[type="submit"]',
    "username": '[data-testid="username"], input[name="username"], input[placeholder*="username" i]',
    "password": '[data-testid="password"], input[name="password"], input[type="password"]',
    "email": '[data-testid="email"], input[name="email"], input[type="email"]',
    "submit button": '[data-testid="submit"], button[type="submit"], input[type="submit"]',
    "search box": '[data-testid="search"], input[name="search"], input[placeholder*="search" i]',
}

DEFAULT_WAIT_MS = 1000

# Keys that "Press <key>" accepts without the word "key", with their Playwright names
KEY_NAMES = {
    "enter": "Enter",
    "return": "Enter",
    "tab": "Tab",
    "escape": "Escape",
    "esc": "Escape",
    "space": "Space",
    "backspace": "Backspace",
    "delete": "Delete",
    "home": "Home",
    "end": "End",
    "pageup": "PageUp",
    "pagedown": "PageDown",
    "arrowup": "ArrowUp",
    "arrowdown": "ArrowDown",
    "arrowleft": "ArrowLeft",
    "arrowright": "ArrowRight",
}

# ── Protocol ─────────────────────────────────────────────────────────────────

PROTOCOL_VERSION = "playwright-mcp-v1"

INBOUND_TYPES = (
    "handshake",
    "run_test",
    "cancel_test",
    "get_status",
    "list_capabilities",
    "ping",
    "get_server_status",
    "browser_action",
    "network_monitor",
)

TERMINAL_EVENT_TYPES = ("test_completed", "test_cancelled")

# ── Server Capabilities ──────────────────────────────────────────────────────

SERVER_NAME = "testweaver"
SERVER_VERSION = "1.0.0"

SUPPORTED_BROWSERS = ["chromium", "firefox", "webkit"]

CAPABILITIES = [
    "test_execution",
    "real_time_logs",
    "screenshots",
    "videos",
    "traces",
    "browser_automation",
    "network_monitoring",
]

BROWSER_ACTIONS = (
    "navigate",
    "screenshot",
    "get_title",
    "get_url",
    "get_content",
    "evaluate",
    "click",
    "fill",
    "select",
    "wait_for_selector",
    "pdf",
)

NETWORK_MONITOR_ACTIONS = ("start", "stop")

# ── Artifacts ────────────────────────────────────────────────────────────────

SCREENSHOT_EXTENSIONS = {".png", ".jpg", ".jpeg"}
VIDEO_EXTENSIONS = {".webm", ".mp4"}
TRACE_EXTENSIONS = {".zip"}

SCRIPT_FILENAME = "test_session.py"
RUN_CONFIG_FILENAME = "pytest.ini"
CONFTEST_FILENAME = "conftest.py"
RUN_CONFIG_JSON = "run-config.json"
REPORT_FILENAME = "report.json"
ARTIFACTS_SUBDIR = "artifacts"
