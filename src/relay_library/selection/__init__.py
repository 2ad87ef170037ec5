# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .failover import FailoverSelector, build_candidates

__all__ = ["FailoverSelector", "build_candidates"]
