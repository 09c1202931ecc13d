#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Job Definition construction.

JobBuilder turns one update block of the runner configuration into the
engine's declarative input. Three job shapes exist:

- discovery: updates nothing, only reports the dependency list
- update-all: update every dependency (or, in security-only mode, exactly the
  vulnerable ones)
- pull request refresh: recompute one existing pull request
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .config import registries_for_update
from .errors import ConfigurationError
from .schema import (
    MAX_UPDATER_RUN_TIME,
    AllowedUpdate,
    CommitMessageOptions,
    Credential,
    DependencyGroup,
    EngineOptions,
    ExistingGroupPullRequest,
    ExistingPullRequest,
    ExistingPullRequestDependency,
    GroupConfig,
    GroupRules,
    HostConfig,
    IgnoreCondition,
    JobDefinition,
    JobSource,
    JobSpec,
    SecurityAdvisory,
    UpdateConfig,
    dependency_names_of,
)

logger = logging.getLogger(__name__)

# Experiments the hosted service enables; user experiments are merged over these.
DEFAULT_EXPERIMENTS: Dict[str, Union[str, bool]] = {
    "record-ecosystem-versions": True,
    "record-update-job-unknown-error": True,
    "proxy-cached": True,
    "move-job-token": True,
    "dependency-change-validation": True,
    "nuget-install-dotnet-sdks": True,
    "nuget-native-analysis": True,
    "nuget-native-updater": True,
    "nuget-use-direct-discovery": True,
    "nuget-use-legacy-updater-when-updating-pr": True,
    "enable-file-parser-python-local": True,
    "npm-fallback-version-above-v6": True,
    "lead-security-dependency": True,
    "enable-shared-helpers-command-timeout": True,
    "enable-engine-version-detection": True,
    "avoid-duplicate-updates-package-json": True,
    "allow-refresh-for-existing-pr-dependencies": True,
    "allow-refresh-group-with-all-dependencies": True,
    "exclude-local-composer-packages": True,
    "enable-enhanced-error-details-for-updater": True,
}

REQUIREMENTS_UPDATE_STRATEGIES: Dict[str, Optional[str]] = {
    "auto": None,
    "increase": "bump_versions",
    "increase-if-necessary": "bump_versions_if_necessary",
    "lockfile-only": "lockfile_only",
    "widen": "widen_ranges",
}


# ============================================================================
# Field mapping helpers
# ============================================================================


def map_experiments(experiments: Optional[Mapping[str, Any]]) -> Dict[str, Union[str, bool]]:
    """Merge user experiments over the defaults.

    "true"/"false" strings (any case) become booleans; other strings and
    booleans pass through; anything else is dropped.
    """
    merged: Dict[str, Union[str, bool]] = dict(DEFAULT_EXPERIMENTS)
    for name, value in (experiments or {}).items():
        if isinstance(value, str) and value.lower() in ("true", "false"):
            merged[name] = value.lower() == "true"
        elif isinstance(value, (str, bool)):
            merged[name] = value
        else:
            logger.debug(f"Ignoring experiment '{name}' with unsupported value {value!r}")
    return merged


def map_requirements_update_strategy(versioning_strategy: Optional[str]) -> Optional[str]:
    """Translate a versioning-strategy into the engine's requirements-update-strategy.

    Raises:
        ConfigurationError: For an unrecognized strategy
    """
    if not versioning_strategy:
        return None
    if versioning_strategy not in REQUIREMENTS_UPDATE_STRATEGIES:
        raise ConfigurationError(f"Invalid versioning strategy '{versioning_strategy}'")
    return REQUIREMENTS_UPDATE_STRATEGIES[versioning_strategy]


def map_groups(groups: Optional[Mapping[str, Optional[GroupConfig]]]) -> Optional[List[DependencyGroup]]:
    if not groups:
        return None
    return [
        DependencyGroup(
            name=name,
            applies_to=group.applies_to,
            rules=GroupRules(
                patterns=list(group.patterns) if group.patterns else ["*"],
                exclude_patterns=group.exclude_patterns,
                dependency_type=group.dependency_type,
                update_types=group.update_types,
            ),
        )
        for name, group in groups.items()
        if group is not None
    ]


def map_allowed_updates(update: UpdateConfig) -> List[AllowedUpdate]:
    if not update.allow:
        return [AllowedUpdate(dependency_type="all")]
    return [
        AllowedUpdate(
            dependency_name=allow.dependency_name,
            dependency_type=allow.dependency_type,
            update_type=allow.update_type,
        )
        for allow in update.allow
    ]


def map_ignore_conditions(update: UpdateConfig) -> Optional[List[IgnoreCondition]]:
    if not update.ignore:
        return None
    return [
        IgnoreCondition(
            dependency_name=ignore.dependency_name,
            source=ignore.source,
            update_types=ignore.update_types,
            version_requirement=", ".join(ignore.versions) if ignore.versions else None,
        )
        for ignore in update.ignore
    ]


def map_commit_message_options(update: UpdateConfig) -> Optional[CommitMessageOptions]:
    options = update.commit_message
    if options is None:
        return None
    include_scope = True if (options.include or "").strip().lower() == "scope" else None
    return CommitMessageOptions(
        prefix=options.prefix,
        prefix_development=options.prefix_development,
        include_scope=include_scope,
    )


def split_existing_pull_requests(
    existing_pull_requests: Optional[Sequence[ExistingPullRequest]],
) -> tuple[Optional[List[List[ExistingPullRequestDependency]]], Optional[List[ExistingGroupPullRequest]]]:
    """Separate flat (ungrouped) identities from group identities."""
    if existing_pull_requests is None:
        return None, None
    flat = [list(pr) for pr in existing_pull_requests if isinstance(pr, list)]
    grouped = [pr for pr in existing_pull_requests if isinstance(pr, ExistingGroupPullRequest)]
    return flat, grouped


def filter_advisories(
    advisories: Optional[Sequence[SecurityAdvisory]], dependency_names: Sequence[str]
) -> Optional[List[SecurityAdvisory]]:
    if advisories is None:
        return None
    names = set(dependency_names)
    return [a for a in advisories if a.dependency_name in names]


# ============================================================================
# Job Builder
# ============================================================================


class JobBuilder:
    """Builds Job Definitions for the update blocks of one repository.

    Args:
        host: Hosting platform settings (source descriptor, git credential)
        engine: Engine options (experiments, debug)
        registry_credentials: Credentials per registry name, from parse_registries()
    """

    def __init__(
        self,
        host: HostConfig,
        engine: Optional[EngineOptions] = None,
        registry_credentials: Optional[Mapping[str, Credential]] = None,
    ):
        self.host = host
        self.engine = engine or EngineOptions()
        self.registry_credentials = dict(registry_credentials or {})
        self.experiments = map_experiments(self.engine.experiments)

    def credentials_for(self, update: UpdateConfig) -> List[Credential]:
        """Credentials in precedence order: source host, github.com, then registries."""
        credentials: List[Credential] = []
        if self.host.access_token:
            credentials.append(
                Credential(
                    type="git_source",
                    host=self.host.hostname,
                    username=(self.host.access_user or "").strip() or "x-access-token",
                    password=self.host.access_token,
                )
            )
        if self.host.github_token:
            credentials.append(
                Credential(
                    type="git_source",
                    host="github.com",
                    username="x-access-token",
                    password=self.host.github_token,
                )
            )

        credentials.extend(registries_for_update(update, self.registry_credentials))
        return credentials

    def source_for(self, update: UpdateConfig) -> JobSource:
        return JobSource(
            provider="azure",
            api_endpoint=self.host.api_endpoint,
            hostname=self.host.hostname,
            repo=self.host.repository_slug,
            branch=update.target_branch,
            directory=update.directory,
            directories=list(update.directories) if update.directories else None,
        )

    def list_all_dependencies_job(self, update_id: str, update: UpdateConfig) -> JobDefinition:
        """Job that updates nothing but reports the dependency list."""
        credentials = self.credentials_for(update)
        job = JobSpec(
            id=f"discover-{update_id}-{update.package_ecosystem}-dependency-list",
            package_manager=update.package_manager,
            ignore_conditions=[IgnoreCondition(dependency_name="*")],
            source=self.source_for(update),
            experiments=self.experiments,
            debug=self.engine.debug,
            credentials_metadata=[c.without_secrets() for c in credentials],
        )
        return JobDefinition(job=job, credentials=credentials)

    def update_all_dependencies_job(
        self,
        update_id: str,
        update: UpdateConfig,
        dependency_names: Optional[Sequence[str]] = None,
        existing_pull_requests: Optional[Sequence[ExistingPullRequest]] = None,
        security_advisories: Optional[Sequence[SecurityAdvisory]] = None,
    ) -> JobDefinition:
        """Job that updates every dependency, or only vulnerable ones in security-only mode.

        Raises:
            ConfigurationError: If security-only mode is requested without an
                explicit dependency list, or the versioning strategy is invalid
        """
        security_only = update.security_updates_only
        if security_only:
            if dependency_names is None:
                raise ConfigurationError(
                    f"Security-only updates for '{update.package_ecosystem}' need an explicit dependency list"
                )
            vulnerable = {a.dependency_name for a in security_advisories or []}
            dependency_names = [name for name in dependency_names if name in vulnerable]

        return self._build_update_job(
            job_id=f"update-{update_id}-{update.package_ecosystem}-{'security-only' if security_only else 'all'}",
            update=update,
            updating_pull_request=False,
            dependency_group_name=None,
            dependency_names=dependency_names,
            existing_pull_requests=existing_pull_requests,
            security_advisories=security_advisories,
        )

    def update_pull_request_job(
        self,
        pull_request_id: Union[int, str],
        update: UpdateConfig,
        existing_pull_requests: Sequence[ExistingPullRequest],
        pull_request_to_update: ExistingPullRequest,
        security_advisories: Optional[Sequence[SecurityAdvisory]] = None,
    ) -> JobDefinition:
        """Job that recomputes one existing pull request."""
        group_name = None
        if isinstance(pull_request_to_update, ExistingGroupPullRequest):
            group_name = pull_request_to_update.dependency_group_name
        names = dependency_names_of(pull_request_to_update)

        return self._build_update_job(
            job_id=f"update-pr-{pull_request_id}",
            update=update,
            updating_pull_request=True,
            dependency_group_name=group_name,
            dependency_names=names,
            existing_pull_requests=existing_pull_requests,
            security_advisories=filter_advisories(security_advisories, names),
        )

    def _build_update_job(
        self,
        job_id: str,
        update: UpdateConfig,
        updating_pull_request: bool,
        dependency_group_name: Optional[str],
        dependency_names: Optional[Sequence[str]],
        existing_pull_requests: Optional[Sequence[ExistingPullRequest]],
        security_advisories: Optional[Sequence[SecurityAdvisory]],
    ) -> JobDefinition:
        requirements_update_strategy = map_requirements_update_strategy(update.versioning_strategy)
        credentials = self.credentials_for(update)
        flat, grouped = split_existing_pull_requests(existing_pull_requests)

        job = JobSpec(
            id=job_id,
            package_manager=update.package_manager,
            updating_a_pull_request=updating_pull_request,
            dependency_group_to_refresh=dependency_group_name,
            dependency_groups=map_groups(update.groups),
            dependencies=list(dependency_names) if dependency_names is not None else None,
            allowed_updates=map_allowed_updates(update),
            ignore_conditions=map_ignore_conditions(update),
            security_updates_only=update.security_updates_only,
            security_advisories=[
                SecurityAdvisory(
                    dependency_name=a.dependency_name,
                    affected_versions=list(a.affected_versions),
                    patched_versions=list(a.patched_versions),
                    unaffected_versions=list(a.unaffected_versions),
                )
                for a in security_advisories
            ]
            if security_advisories is not None
            else None,
            source=self.source_for(update),
            existing_pull_requests=flat,
            existing_group_pull_requests=grouped,
            commit_message_options=map_commit_message_options(update),
            experiments=self.experiments,
            reject_external_code=(update.insecure_external_code_execution or "").strip().lower() == "deny",
            requirements_update_strategy=requirements_update_strategy,
            lockfile_only=update.versioning_strategy == "lockfile-only",
            vendor_dependencies=update.vendor,
            update_subdependencies=False,
            max_updater_run_time=MAX_UPDATER_RUN_TIME,
            proxy_log_response_body_on_auth_failure=True,
            credentials_metadata=[c.without_secrets() for c in credentials],
            debug=self.engine.debug,
        )
        logger.debug(f"Built job {job_id} for {update.package_manager}")
        return JobDefinition(job=job, credentials=credentials)
