#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Output reconciliation.

OutputReconciler applies the engine's output records, in order, to the
hosting platform. Each record yields an OutputResult; a failing record never
stops the ones after it. Pull requests are matched to records by identity
(package manager plus the exact set of dependency names), so repeated runs
update or close the pull requests earlier runs created instead of opening
duplicates.
"""

import logging
import os
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import urlencode

import yaml
from jinja2 import Environment, FileSystemLoader

from updatectl.contract.enums import ChangeType, CloseReason, MergeStrategy, OutputType
from updatectl.contract.outputs import (
    ClosePullRequestData,
    CreatePullRequestData,
    DependencyFile,
    DependencyListData,
    JobErrorData,
    OutputRecord,
    UpdatePullRequestData,
    parse_output_data,
)
from updatectl.core.branch_name import get_branch_name_for_update
from updatectl.core.schema import (
    ExistingGroupPullRequest,
    ExistingPullRequestDependency,
    JobDefinition,
    ReconcileOptions,
    UpdateConfig,
)
from updatectl.host.client import HostClient
from updatectl.host.models import (
    PROPERTY_DEPENDENCIES,
    PROPERTY_PACKAGE_MANAGER,
    AbandonPullRequest,
    ApprovePullRequest,
    Author,
    AutoComplete,
    CreatePullRequest,
    FileChange,
    PullRequestProperty,
    PullRequestRecord,
    UpdatePullRequest,
    dump_pull_request_identity,
    find_pull_request,
    normalize_file_path,
)

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 4000
# U+FFFD replacement characters left behind by mis-decoded emoji in engine PR bodies
MOJIBAKE = "���"
COMPATIBILITY_BADGE_URL = "https://dependabot-badges.githubapp.com/badges/compatibility_score"
TEMPLATE_DIR = Path(__file__).parent.parent / "templates"

_CLOSE_REASON_MESSAGES: Dict[str, str] = {
    CloseReason.DEPENDENCIES_CHANGED.value: "Looks like the dependencies have changed",
    CloseReason.DEPENDENCY_GROUP_EMPTY.value: "Looks like the dependencies in this group are now empty",
    CloseReason.DEPENDENCY_REMOVED.value: "Looks like {lead} is no longer a dependency",
    CloseReason.UP_TO_DATE.value: "Looks like {lead} is up-to-date now",
    CloseReason.UPDATE_NO_LONGER_POSSIBLE.value: "Looks like {lead} can no longer be updated",
}

_NO_OP_TYPES = frozenset(
    {
        OutputType.MARK_AS_PROCESSED.value,
        OutputType.RECORD_ECOSYSTEM_VERSIONS.value,
        OutputType.RECORD_ECOSYSTEM_META.value,
        OutputType.INCREMENT_METRIC.value,
    }
)

_ERROR_TYPES = frozenset(
    {
        OutputType.RECORD_UPDATE_JOB_ERROR.value,
        OutputType.RECORD_UPDATE_JOB_UNKNOWN_ERROR.value,
    }
)


@dataclass
class OutputResult:
    """Outcome of reconciling one output record."""

    type: str
    success: bool
    skipped: bool = False
    pull_request_id: Optional[int] = None
    message: Optional[str] = None
    error: Optional[BaseException] = None
    error_details: Optional[Dict[str, Any]] = None


@dataclass
class CreatedPullRequest:
    """A pull request opened during the current run."""

    id: int
    package_manager: str
    branch_name: str
    record: PullRequestRecord


@dataclass
class ReconcileContext:
    """Per-job inputs every handler needs."""

    update: UpdateConfig
    job: JobDefinition


# ============================================================================
# Formatting helpers
# ============================================================================


def close_reason_comment(reason: Optional[str], dependency_names: Sequence[str]) -> Optional[str]:
    """Human-readable abandon comment for a close reason; None for unknown reasons."""
    template = _CLOSE_REASON_MESSAGES.get(reason or "")
    if template is None:
        return None
    lead = dependency_names[0] if len(dependency_names) == 1 else "these dependencies"
    return template.format(lead=lead) + ", so this is no longer needed."


def compatibility_badge_url(package_manager: str, data: CreatePullRequestData) -> Optional[str]:
    if len(data.dependencies) != 1:
        return None
    dependency = data.dependencies[0]
    query = {
        "dependency-name": dependency.name,
        "package-manager": package_manager,
        "previous-version": dependency.previous_version or "",
        "new-version": dependency.version or "",
    }
    return f"{COMPATIBILITY_BADGE_URL}?{urlencode(query)}"


class DescriptionRenderer:
    """Renders pull request descriptions from templates/pull_request_description.md.j2."""

    def __init__(self, template_dir: Path = TEMPLATE_DIR, max_length: int = MAX_DESCRIPTION_LENGTH):
        env = Environment(loader=FileSystemLoader(str(template_dir)))
        self.template = env.get_template("pull_request_description.md.j2")
        self.max_length = max_length

    def render(self, body: Optional[str], badge_url: Optional[str] = None) -> str:
        body = (body or "").replace(MOJIBAKE, "")
        header_length = len(self.template.render(body="", compatibility_badge_url=badge_url))
        body = body[: max(self.max_length - header_length, 0)]
        return self.template.render(body=body, compatibility_badge_url=badge_url)


def file_changes(files: Sequence[DependencyFile]) -> List[FileChange]:
    """Translate engine file records into push changes. Only `type: file` entries are pushed."""
    changes: List[FileChange] = []
    for f in files:
        if f.type != "file":
            continue
        if f.deleted:
            change_type = ChangeType.DELETE
        elif f.operation == "update":
            change_type = ChangeType.EDIT
        else:
            change_type = ChangeType.ADD
        changes.append(
            FileChange(
                change_type=change_type,
                path=normalize_file_path(posixpath.join(f.directory or "/", f.name)),
                content=None if change_type == ChangeType.DELETE else f.content,
                encoding=f.content_encoding,
            )
        )
    return changes


def branch_conflicts(branch_name: str, existing: str) -> bool:
    """Git cannot hold a branch that equals, or is a path prefix of, another branch."""
    return (
        branch_name == existing
        or branch_name.startswith(existing + "/")
        or existing.startswith(branch_name + "/")
    )


# ============================================================================
# Reconciler
# ============================================================================


class OutputReconciler:
    """Turns engine output records into pull request operations for one repository.

    State that lives for one run: the branch names known to exist, the active
    pull request records (pruned as they are abandoned) and the pull requests
    created so far. Nothing is persisted.

    Args:
        client: Host client for the repository
        project: Project name
        repository: Repository name
        options: Reconcile policy switches
        existing_branch_names: Branches in the repository (None if unknown)
        existing_pull_requests: Active pull requests with updatectl properties
        approver: Client authenticated as the approving user (auto-approve)
        renderer: Description renderer (default: the packaged template)
    """

    def __init__(
        self,
        client: HostClient,
        project: str,
        repository: str,
        options: Optional[ReconcileOptions] = None,
        existing_branch_names: Optional[List[str]] = None,
        existing_pull_requests: Optional[List[PullRequestRecord]] = None,
        approver: Optional[HostClient] = None,
        renderer: Optional[DescriptionRenderer] = None,
    ):
        self.client = client
        self.project = project
        self.repository = repository
        self.options = options or ReconcileOptions()
        self.existing_branch_names = existing_branch_names
        self.existing_pull_requests: List[PullRequestRecord] = list(existing_pull_requests or [])
        self.approver = approver
        self.renderer = renderer or DescriptionRenderer()
        self.created_pull_requests: List[CreatedPullRequest] = []
        self._default_branch: Optional[str] = None
        self._handlers: Dict[str, Callable[[ReconcileContext, OutputRecord], OutputResult]] = {
            OutputType.UPDATE_DEPENDENCY_LIST.value: self._handle_dependency_list,
            OutputType.CREATE_PULL_REQUEST.value: self._handle_create,
            OutputType.UPDATE_PULL_REQUEST.value: self._handle_update,
            OutputType.CLOSE_PULL_REQUEST.value: self._handle_close,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def created_pull_request_ids(self) -> List[int]:
        return [pr.id for pr in self.created_pull_requests]

    def pull_requests_for(self, package_manager: str) -> List[PullRequestRecord]:
        """Active records for a package manager, including ones created this run."""
        existing = [pr for pr in self.existing_pull_requests if pr.package_manager == package_manager]
        created = [pr.record for pr in self.created_pull_requests if pr.package_manager == package_manager]
        return existing + created

    def process(self, update: UpdateConfig, job: JobDefinition, record: OutputRecord) -> OutputResult:
        """Reconcile one output record. Never raises."""
        context = ReconcileContext(update=update, job=job)
        try:
            if record.type in self._handlers:
                return self._handlers[record.type](context, record)
            if record.type in _ERROR_TYPES:
                return self._handle_job_error(record)
            if record.type in _NO_OP_TYPES:
                parse_output_data(record)
                return OutputResult(type=record.type, success=True)
            logger.warning(f"Unknown output type '{record.type}'; ignoring")
            return OutputResult(type=record.type, success=True, skipped=True)
        except Exception as e:
            logger.error(f"Failed to process '{record.type}' output: {e}")
            logger.debug("Output processing failure", exc_info=True)
            return OutputResult(type=record.type, success=False, error=e, message=str(e))

    def process_all(
        self, update: UpdateConfig, job: JobDefinition, records: Sequence[OutputRecord]
    ) -> List[OutputResult]:
        """Reconcile records strictly in emission order."""
        return [self.process(update, job, record) for record in records]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def author(self) -> Author:
        return Author(email=self.options.author_email, name=self.options.author_name)

    def _target_branch(self, update: UpdateConfig) -> str:
        if update.target_branch:
            return update.target_branch
        if self._default_branch is None:
            self._default_branch = self.client.get_default_branch(self.project, self.repository)
        if not self._default_branch:
            raise ValueError(f"Could not determine the default branch of {self.repository}")
        return self._default_branch

    def _skip_pull_request_changes(self, record_type: str, action: str) -> Optional[OutputResult]:
        if self.options.dry_run:
            logger.warning(f"Skipping {action}: dry run is enabled")
            return OutputResult(type=record_type, success=True, skipped=True, message="dry run")
        if self.options.skip_pull_requests:
            logger.warning(f"Skipping {action}: pull request changes are disabled")
            return OutputResult(type=record_type, success=True, skipped=True, message="pull requests skipped")
        return None

    def _approve(self, pull_request_id: int) -> bool:
        if not self.options.auto_approve:
            return True
        approver = self.approver or self.client
        return approver.approve_pull_request(
            ApprovePullRequest(project=self.project, repository=self.repository, pull_request_id=pull_request_id)
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _handle_dependency_list(self, context: ReconcileContext, record: OutputRecord) -> OutputResult:
        data = parse_output_data(record)
        assert isinstance(data, DependencyListData)
        if self.options.store_dependency_list:
            package_manager = context.update.package_manager
            path = Path(self.options.dependency_list_dir) / f"{package_manager}.yaml"
            os.makedirs(path.parent, exist_ok=True)
            snapshot = {
                "dependencies": [d.model_dump(mode="json", exclude_none=True) for d in data.dependencies or []],
                "dependency-files": list(data.dependency_files),
                "last-updated": data.last_updated.isoformat() if data.last_updated else None,
            }
            with open(path, "w") as f:
                yaml.safe_dump(snapshot, f, sort_keys=False)
            logger.info(f"Stored dependency list for {package_manager} at {path}")
        return OutputResult(type=record.type, success=True)

    def _handle_create(self, context: ReconcileContext, record: OutputRecord) -> OutputResult:
        skipped = self._skip_pull_request_changes(record.type, "pull request creation")
        if skipped:
            return skipped

        update = context.update
        data = parse_output_data(record)
        assert isinstance(data, CreatePullRequestData)
        package_manager = update.package_manager

        limit = update.open_pull_requests_limit
        open_count = len(self.pull_requests_for(package_manager))
        if limit > 0 and open_count >= limit:
            logger.warning(f"Skipping pull request creation: open pull request limit ({limit}) reached")
            return OutputResult(type=record.type, success=True, skipped=True, message="limit reached")

        dependency_names = [d.name for d in data.dependencies]
        duplicate = find_pull_request(self.pull_requests_for(package_manager), package_manager, dependency_names)
        if duplicate is not None:
            logger.warning(
                f"Skipping pull request creation: #{duplicate.id} already covers {', '.join(dependency_names)}"
            )
            return OutputResult(type=record.type, success=True, skipped=True, pull_request_id=duplicate.id)

        source = context.job.job.source
        directory = source.directory or next((d.directory for d in data.dependencies if d.directory), None)
        group_name = data.dependency_group.name if data.dependency_group else None
        target_branch = self._target_branch(update)
        branch_name = get_branch_name_for_update(
            update.package_ecosystem,
            target_branch,
            directory,
            group_name,
            data.dependencies,
            separator=update.branch_separator,
        )

        for existing in self.existing_branch_names or []:
            if branch_conflicts(branch_name, existing):
                message = (
                    f"Branch '{branch_name}' conflicts with existing branch '{existing}'; "
                    "delete the stale branch to allow the pull request to be created"
                )
                logger.error(message)
                return OutputResult(type=record.type, success=False, message=message)

        base_commit = data.base_commit_sha or source.commit
        if not base_commit:
            raise ValueError("Create pull request output has no base commit")

        identity_dependencies = [
            ExistingPullRequestDependency(
                dependency_name=d.name,
                dependency_version=d.version,
                directory=d.directory,
                dependency_removed=True if d.removed else None,
            )
            for d in data.dependencies
        ]
        identity = (
            ExistingGroupPullRequest(dependency_group_name=group_name, dependencies=identity_dependencies)
            if group_name
            else identity_dependencies
        )
        properties = [
            PullRequestProperty(name=PROPERTY_PACKAGE_MANAGER, value=package_manager),
            PullRequestProperty(name=PROPERTY_DEPENDENCIES, value=dump_pull_request_identity(identity)),
        ]

        auto_complete = None
        if self.options.set_auto_complete:
            auto_complete = AutoComplete(
                merge_strategy=MergeStrategy(self.options.merge_strategy),
                ignore_policy_config_ids=list(self.options.auto_complete_ignore_config_ids),
            )

        description = self.renderer.render(data.pr_body, compatibility_badge_url(package_manager, data))
        pull_request_id = self.client.create_pull_request(
            CreatePullRequest(
                project=self.project,
                repository=self.repository,
                source_branch=branch_name,
                target_branch=target_branch,
                base_commit=base_commit,
                author=self.author,
                title=data.pr_title,
                description=description,
                commit_message=data.commit_message or data.pr_title,
                changes=file_changes(data.updated_dependency_files),
                properties=properties,
                auto_complete=auto_complete,
                assignees=list(update.assignees or []),
                reviewers=list(update.reviewers or []),
                labels=list(update.labels or []),
                work_item=update.milestone,
            )
        )
        if pull_request_id is None:
            return OutputResult(type=record.type, success=False, message=f"Failed to create '{branch_name}'")

        self.created_pull_requests.append(
            CreatedPullRequest(
                id=pull_request_id,
                package_manager=package_manager,
                branch_name=branch_name,
                record=PullRequestRecord(id=pull_request_id, properties=properties),
            )
        )
        if self.existing_branch_names is not None:
            self.existing_branch_names.append(branch_name)

        approved = self._approve(pull_request_id)
        return OutputResult(type=record.type, success=approved, pull_request_id=pull_request_id)

    def _handle_update(self, context: ReconcileContext, record: OutputRecord) -> OutputResult:
        skipped = self._skip_pull_request_changes(record.type, "pull request update")
        if skipped:
            return skipped

        data = parse_output_data(record)
        assert isinstance(data, UpdatePullRequestData)
        package_manager = context.update.package_manager

        pull_request = find_pull_request(
            self.pull_requests_for(package_manager), package_manager, data.dependency_names
        )
        if pull_request is None:
            message = f"No open pull request found for {package_manager} [{', '.join(data.dependency_names)}]"
            logger.error(message)
            return OutputResult(type=record.type, success=False, message=message)

        commit = data.base_commit_sha or context.job.job.source.commit
        if not commit:
            raise ValueError("Update pull request output has no base commit")

        updated = self.client.update_pull_request(
            UpdatePullRequest(
                project=self.project,
                repository=self.repository,
                pull_request_id=pull_request.id,
                commit=commit,
                author=self.author,
                changes=file_changes(data.updated_dependency_files),
            )
        )
        if updated:
            updated = self._approve(pull_request.id)
        return OutputResult(type=record.type, success=updated, pull_request_id=pull_request.id)

    def _handle_close(self, context: ReconcileContext, record: OutputRecord) -> OutputResult:
        skipped = self._skip_pull_request_changes(record.type, "pull request close")
        if skipped:
            return skipped
        if not self.options.abandon_unwanted_pull_requests:
            logger.warning("Skipping pull request close: abandoning unwanted pull requests is disabled")
            return OutputResult(type=record.type, success=True, skipped=True)

        data = parse_output_data(record)
        assert isinstance(data, ClosePullRequestData)
        package_manager = context.update.package_manager

        pull_request = find_pull_request(
            self.pull_requests_for(package_manager), package_manager, data.dependency_names
        )
        if pull_request is None:
            message = f"No open pull request found for {package_manager} [{', '.join(data.dependency_names)}]"
            logger.error(message)
            return OutputResult(type=record.type, success=False, message=message)

        comment = None
        if self.options.comment_pull_requests:
            comment = close_reason_comment(data.reason, data.dependency_names)

        abandoned = self.client.abandon_pull_request(
            AbandonPullRequest(
                project=self.project,
                repository=self.repository,
                pull_request_id=pull_request.id,
                comment=comment,
            )
        )
        if abandoned:
            self.forget_pull_request(pull_request.id)
        return OutputResult(type=record.type, success=abandoned, pull_request_id=pull_request.id)

    def _handle_job_error(self, record: OutputRecord) -> OutputResult:
        data = parse_output_data(record)
        assert isinstance(data, JobErrorData)
        details = data.model_dump(by_alias=True, exclude_none=True)
        logger.error(f"Update job error: {data.error_type or 'unknown'} {data.error_details or ''}".rstrip())
        return OutputResult(
            type=record.type,
            success=False,
            message=data.error_type or "unknown error",
            error_details=details,
        )

    def forget_pull_request(self, pull_request_id: int) -> None:
        """Drop an abandoned pull request from the in-run records."""
        self.existing_pull_requests = [pr for pr in self.existing_pull_requests if pr.id != pull_request_id]
        self.created_pull_requests = [pr for pr in self.created_pull_requests if pr.id != pull_request_id]
