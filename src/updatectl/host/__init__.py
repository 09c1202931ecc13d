# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Hosting platform access.

This package contains:
- models: Pull request records, identity properties and request types
- client: HostClient, the retrying REST client
"""

from .client import HostClient
from .models import PullRequestProperty, PullRequestRecord, find_pull_request

__all__ = ["HostClient", "PullRequestProperty", "PullRequestRecord", "find_pull_request"]
