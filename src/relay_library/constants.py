# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Shared constants for the relay library.

Values here are defaults; most of them can be overridden through
``RelayConfig`` (see config.py).
"""

# =============================================================================
# QUOTA BACKOFF
# =============================================================================

# First cooldown after a quota failure, doubled per consecutive failure
BACKOFF_BASE_SECONDS = 1.0
# Hard ceiling for a single cooldown (30 minutes)
BACKOFF_MAX_SECONDS = 30 * 60

# =============================================================================
# PERSISTENCE
# =============================================================================

QUOTA_SCHEMA_VERSION = 1
ACCOUNTS_SCHEMA_VERSION = 1

QUOTA_STORAGE_KEY = "quota_state"
ACCOUNTS_STORAGE_KEY = "accounts"

# =============================================================================
# STREAM BUFFERING
# =============================================================================

TEXT_BUFFER_MIN_SIZE = 40
TEXT_BUFFER_MAX_DELAY_MS = 25
# bytes per millisecond above which the buffer thresholds shrink
HIGH_VELOCITY_THRESHOLD = 10
ADAPTIVE_BUFFER_MULTIPLIER = 0.5

# Word-oriented profile used by the Anthropic dialect
ANTHROPIC_BUFFER_WORD_THRESHOLD = 20
ANTHROPIC_BUFFER_CHAR_THRESHOLD = 160
ANTHROPIC_BUFFER_MAX_DELAY_MS = 200

THINKING_OPEN_TAG = "<thinking>"
THINKING_CLOSE_TAG = "</thinking>"
# Characters held back while scanning for a tag that may straddle chunks
THINKING_OPEN_HOLDBACK = 10
THINKING_CLOSE_HOLDBACK = 12

FUNCTION_CALLS_OPEN_TAG = "<function_calls>"
FUNCTION_CALLS_CLOSE_TAG = "</function_calls>"

THINK_PLACEHOLDER = "<think/>"

# Tool-call argument repair window
DUPLICATE_PREFIX_MAX_CHECK = 50
DUPLICATE_PREFIX_MIN_CHECK = 5

# =============================================================================
# REQUESTS
# =============================================================================

DEFAULT_REQUEST_TIMEOUT = 600
DEFAULT_RATE_LIMIT_REQUESTS = 2
DEFAULT_RATE_LIMIT_WINDOW_MS = 1000

# Providers where load balancing is on unless configured otherwise
DEFAULT_LOAD_BALANCE_PROVIDERS = ("antigravity",)

DEFAULT_API_BASES = {
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta",
}

ANTHROPIC_API_VERSION = "2023-06-01"

# Wire dialect per provider; unknown providers speak the OpenAI dialect
DEFAULT_PROVIDER_DIALECTS = {
    "openai": "openai",
    "anthropic": "anthropic",
    "gemini": "gemini",
    "antigravity": "gemini",
}
FALLBACK_DIALECT = "openai"
