# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Tests for Job Definition construction."""

import pytest
import yaml

from updatectl.core.errors import ConfigurationError
from updatectl.core.job_builder import (
    DEFAULT_EXPERIMENTS,
    JobBuilder,
    map_experiments,
    map_requirements_update_strategy,
)
from updatectl.core.schema import (
    AllowCondition,
    CommitMessageConfig,
    Credential,
    EngineOptions,
    ExistingGroupPullRequest,
    ExistingPullRequestDependency,
    GroupConfig,
    HostConfig,
    IgnoreRule,
    SecurityAdvisory,
    UpdateConfig,
)


def make_host(**overrides):
    values = dict(
        organization_url="https://dev.azure.com/contoso",
        project="web",
        repository="shop",
        access_token="host-pat",
    )
    values.update(overrides)
    return HostConfig(**values)


def make_update(**overrides):
    values = dict(package_ecosystem="npm", directory="/")
    values.update(overrides)
    return UpdateConfig(**values)


# ============================================================================
# Field mapping
# ============================================================================


class TestMapExperiments:
    """Merging user experiments over the defaults."""

    def test_defaults_present(self):
        assert map_experiments(None) == DEFAULT_EXPERIMENTS

    def test_string_booleans_converted(self):
        merged = map_experiments({"foo": "TRUE", "bar": "false"})

        assert merged["foo"] is True
        assert merged["bar"] is False

    def test_other_values(self):
        """Plain strings pass through; numbers are dropped."""
        merged = map_experiments({"mode": "fast", "count": 3})

        assert merged["mode"] == "fast"
        assert "count" not in merged

    def test_user_value_overrides_default(self):
        merged = map_experiments({"proxy-cached": False})

        assert merged["proxy-cached"] is False


class TestRequirementsUpdateStrategy:
    """versioning-strategy to requirements-update-strategy mapping."""

    @pytest.mark.parametrize(
        "strategy,expected",
        [
            (None, None),
            ("auto", None),
            ("increase", "bump_versions"),
            ("increase-if-necessary", "bump_versions_if_necessary"),
            ("lockfile-only", "lockfile_only"),
            ("widen", "widen_ranges"),
        ],
    )
    def test_known(self, strategy, expected):
        assert map_requirements_update_strategy(strategy) == expected

    def test_unknown_raises(self):
        with pytest.raises(ConfigurationError, match="Invalid versioning strategy"):
            map_requirements_update_strategy("sideways")


# ============================================================================
# Job Builder
# ============================================================================


class TestCredentials:
    """Credential order and metadata."""

    def test_order_host_github_registries(self):
        feed = Credential(type="nuget_feed", url="https://pkgs.example.com/index.json", token="feed-token")
        builder = JobBuilder(make_host(github_token="gh-token"), registry_credentials={"feed": feed})

        credentials = builder.credentials_for(make_update(registries=["feed"]))

        assert [c.host for c in credentials[:2]] == ["dev.azure.com", "github.com"]
        assert credentials[0].username == "x-access-token"
        assert credentials[0].password == "host-pat"
        assert credentials[2] is feed

    def test_custom_access_user(self):
        builder = JobBuilder(make_host(access_user="svc-bot"))

        credentials = builder.credentials_for(make_update())

        assert credentials[0].username == "svc-bot"

    def test_unreferenced_registry_excluded(self):
        feed = Credential(type="nuget_feed", url="https://pkgs.example.com/index.json")
        builder = JobBuilder(make_host(), registry_credentials={"feed": feed})

        credentials = builder.credentials_for(make_update())

        assert feed not in credentials

    def test_wildcard_includes_all_registries(self):
        registries = {
            "a": Credential(type="npm_registry", registry="npm.example.com"),
            "b": Credential(type="nuget_feed", url="https://nuget.example.com"),
        }
        builder = JobBuilder(make_host(), registry_credentials=registries)

        credentials = builder.credentials_for(make_update(registries=["*"]))

        assert len(credentials) == 3

    def test_metadata_has_no_secrets(self):
        """credentials-metadata mirrors credentials without the secret fields."""
        builder = JobBuilder(make_host(github_token="gh-token"))

        data = builder.list_all_dependencies_job("0", make_update()).to_dict()

        metadata = data["job"]["credentials-metadata"]
        assert len(metadata) == len(data["credentials"]) == 2
        for record in metadata:
            assert "password" not in record
            assert "username" not in record
            assert record["type"] == "git_source"
        assert data["credentials"][0]["password"] == "host-pat"


class TestDiscoveryJob:
    """The dependency-list discovery job."""

    def test_shape(self):
        builder = JobBuilder(make_host())

        job = builder.list_all_dependencies_job("3", make_update(directory="/client")).job

        assert job.id == "discover-3-npm-dependency-list"
        assert job.package_manager == "npm_and_yarn"
        assert [c.dependency_name for c in job.ignore_conditions] == ["*"]
        assert job.source.provider == "azure"
        assert job.source.repo == "contoso/web/_git/shop"
        assert job.source.directory == "/client"
        assert job.source.api_endpoint == "https://dev.azure.com/"


class TestUpdateAllJob:
    """The update-all job, in normal and security-only mode."""

    def test_id_and_defaults(self):
        builder = JobBuilder(make_host())

        job = builder.update_all_dependencies_job("0", make_update()).job

        assert job.id == "update-0-npm-all"
        assert job.updating_a_pull_request is False
        assert job.security_updates_only is False
        assert job.dependencies is None
        assert [a.dependency_type for a in job.allowed_updates] == ["all"]
        assert job.update_subdependencies is False
        assert job.max_updater_run_time == 2700

    def test_security_only_requires_dependency_list(self):
        builder = JobBuilder(make_host())

        with pytest.raises(ConfigurationError, match="explicit dependency list"):
            builder.update_all_dependencies_job("0", make_update(open_pull_requests_limit=0))

    def test_security_only_filters_to_vulnerable(self):
        builder = JobBuilder(make_host())
        advisories = [SecurityAdvisory(dependency_name="lodash", affected_versions=["< 4.17.21"])]

        job = builder.update_all_dependencies_job(
            "1",
            make_update(open_pull_requests_limit=0),
            dependency_names=["lodash", "react"],
            security_advisories=advisories,
        ).job

        assert job.id == "update-1-npm-security-only"
        assert job.security_updates_only is True
        assert job.dependencies == ["lodash"]
        assert [a.dependency_name for a in job.security_advisories] == ["lodash"]

    def test_security_only_without_vulnerable_keeps_empty_list(self):
        builder = JobBuilder(make_host())

        definition = builder.update_all_dependencies_job(
            "0", make_update(open_pull_requests_limit=0), dependency_names=["lodash"], security_advisories=[]
        )

        data = definition.to_dict()["job"]
        assert data["security-updates-only"] is True
        assert data["dependencies"] == []

    def test_groups_default_pattern(self):
        """A group without patterns matches everything."""
        update = make_update(groups={"all-deps": GroupConfig(), "dev": GroupConfig(patterns=["@types/*"])})

        job = JobBuilder(make_host()).update_all_dependencies_job("0", update).job

        groups = {g.name: g.rules.patterns for g in job.dependency_groups}
        assert groups == {"all-deps": ["*"], "dev": ["@types/*"]}

    def test_allow_and_ignore(self):
        update = make_update(
            allow=[AllowCondition(dependency_name="lodash", dependency_type="direct")],
            ignore=[IgnoreRule(dependency_name="react", versions=[">=18", "<19"], update_types=["version-update:semver-major"])],
        )

        job = JobBuilder(make_host()).update_all_dependencies_job("0", update).job

        assert job.allowed_updates[0].dependency_name == "lodash"
        assert job.ignore_conditions[0].version_requirement == ">=18, <19"
        assert job.ignore_conditions[0].update_types == ["version-update:semver-major"]

    def test_commit_message_include_scope(self):
        update = make_update(commit_message=CommitMessageConfig(prefix="deps", include="scope"))

        job = JobBuilder(make_host()).update_all_dependencies_job("0", update).job

        assert job.commit_message_options.prefix == "deps"
        assert job.commit_message_options.include_scope is True

    @pytest.mark.parametrize("value,expected", [("deny", True), ("allow", False), (None, False)])
    def test_reject_external_code(self, value, expected):
        update = make_update(insecure_external_code_execution=value)

        job = JobBuilder(make_host()).update_all_dependencies_job("0", update).job

        assert job.reject_external_code is expected

    def test_lockfile_only(self):
        update = make_update(versioning_strategy="lockfile-only")

        job = JobBuilder(make_host()).update_all_dependencies_job("0", update).job

        assert job.lockfile_only is True
        assert job.requirements_update_strategy == "lockfile_only"

    def test_existing_pull_requests_split(self):
        flat = [ExistingPullRequestDependency(dependency_name="lodash", dependency_version="4.17.21")]
        group = ExistingGroupPullRequest(
            dependency_group_name="dev",
            dependencies=[ExistingPullRequestDependency(dependency_name="eslint", dependency_version="9.0.0")],
        )

        job = JobBuilder(make_host()).update_all_dependencies_job(
            "0", make_update(), existing_pull_requests=[flat, group]
        ).job

        assert job.existing_pull_requests == [flat]
        assert job.existing_group_pull_requests == [group]

    def test_debug_from_engine_options(self):
        builder = JobBuilder(make_host(), engine=EngineOptions(debug=True))

        assert builder.update_all_dependencies_job("0", make_update()).job.debug is True


class TestPullRequestRefreshJob:
    """Jobs that recompute one existing pull request."""

    def test_flat_pull_request(self):
        existing = [ExistingPullRequestDependency(dependency_name="lodash", dependency_version="4.17.20")]
        advisories = [
            SecurityAdvisory(dependency_name="lodash"),
            SecurityAdvisory(dependency_name="minimist"),
        ]

        job = JobBuilder(make_host()).update_pull_request_job(
            42, make_update(), [existing], existing, advisories
        ).job

        assert job.id == "update-pr-42"
        assert job.updating_a_pull_request is True
        assert job.dependencies == ["lodash"]
        assert job.dependency_group_to_refresh is None
        assert [a.dependency_name for a in job.security_advisories] == ["lodash"]

    def test_group_pull_request(self):
        group = ExistingGroupPullRequest(
            dependency_group_name="dev",
            dependencies=[
                ExistingPullRequestDependency(dependency_name="eslint", dependency_version="9.0.0"),
                ExistingPullRequestDependency(dependency_name="prettier", dependency_version="3.0.0"),
            ],
        )

        job = JobBuilder(make_host()).update_pull_request_job(7, make_update(), [group], group).job

        assert job.dependency_group_to_refresh == "dev"
        assert job.dependencies == ["eslint", "prettier"]
        assert job.security_advisories is None


class TestJobDefinitionDump:
    """Serialized engine input document."""

    def test_hyphenated_keys_and_no_nulls(self):
        job = JobBuilder(make_host()).update_all_dependencies_job("0", make_update())

        data = job.to_dict()

        assert set(data) == {"job", "credentials"}
        assert data["job"]["package-manager"] == "npm_and_yarn"
        assert data["job"]["allowed-updates"] == [{"dependency-type": "all"}]
        assert "dependencies" not in data["job"]
        assert "dependency-groups" not in data["job"]
        assert "branch" not in data["job"]["source"]

    def test_yaml_round_trips(self):
        job = JobBuilder(make_host()).list_all_dependencies_job("0", make_update())

        assert yaml.safe_load(job.to_yaml()) == job.to_dict()
