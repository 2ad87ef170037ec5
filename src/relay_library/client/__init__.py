# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .cache import ClientCache
from .orchestrator import AttemptRecord, RequestOrchestrator, RequestResult
from .transport import (
    REQUEST_BUILDERS,
    ChatRequest,
    HttpTransport,
    PreparedRequest,
    build_anthropic_request,
    build_gemini_request,
    build_openai_request,
)

__all__ = [
    "ClientCache",
    "RequestOrchestrator",
    "RequestResult",
    "AttemptRecord",
    "ChatRequest",
    "HttpTransport",
    "PreparedRequest",
    "REQUEST_BUILDERS",
    "build_openai_request",
    "build_anthropic_request",
    "build_gemini_request",
]
