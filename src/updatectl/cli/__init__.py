# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
CLI modules for updatectl.

Available commands:
- run: Run the update engine for every configured update block and reconcile pull requests
"""
