# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Canonical enum definitions shared by the engine, reconciler and host client."""

from enum import Enum


class RunResult(str, Enum):
    """Overall verdict for a run, derived from the per-output results."""

    SUCCEEDED = "succeeded"
    SUCCEEDED_WITH_ISSUES = "succeeded_with_issues"
    FAILED = "failed"
    SKIPPED = "skipped"


class OutputType(str, Enum):
    """Output record types emitted by the update engine."""

    UPDATE_DEPENDENCY_LIST = "update_dependency_list"
    CREATE_PULL_REQUEST = "create_pull_request"
    UPDATE_PULL_REQUEST = "update_pull_request"
    CLOSE_PULL_REQUEST = "close_pull_request"
    MARK_AS_PROCESSED = "mark_as_processed"
    RECORD_ECOSYSTEM_VERSIONS = "record_ecosystem_versions"
    RECORD_ECOSYSTEM_META = "record_ecosystem_meta"
    RECORD_UPDATE_JOB_ERROR = "record_update_job_error"
    RECORD_UPDATE_JOB_UNKNOWN_ERROR = "record_update_job_unknown_error"
    INCREMENT_METRIC = "increment_metric"


class CloseReason(str, Enum):
    """Reasons the engine gives for closing a pull request."""

    DEPENDENCIES_CHANGED = "dependencies_changed"
    DEPENDENCY_GROUP_EMPTY = "dependency_group_empty"
    DEPENDENCY_REMOVED = "dependency_removed"
    UP_TO_DATE = "up_to_date"
    UPDATE_NO_LONGER_POSSIBLE = "update_no_longer_possible"


class ChangeType(str, Enum):
    """File change kinds, using the hosting platform's names."""

    ADD = "add"
    EDIT = "edit"
    DELETE = "delete"


class MergeStrategy(str, Enum):
    """Auto-complete merge strategies supported by the hosting platform."""

    NO_FAST_FORWARD = "noFastForward"
    SQUASH = "squash"
    REBASE = "rebase"
    REBASE_MERGE = "rebaseMerge"
