# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Update engine invocation (workspace, install, subprocess, output parsing)."""

from .cli import EngineRun, JobWorkspace, UpdateEngine

__all__ = ["EngineRun", "JobWorkspace", "UpdateEngine"]
