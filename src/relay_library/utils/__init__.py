# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .cancellation import CancellationToken
from .rate_limiter import RateLimiter

__all__ = ["CancellationToken", "RateLimiter"]
