# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Tests for the run driver."""

import json
from unittest.mock import MagicMock, patch

import pytest

from updatectl.cli.run import RunSummary, UpdateRunner, collect_secrets, main, summarize
from updatectl.contract.enums import RunResult
from updatectl.contract.outputs import OutputRecord
from updatectl.core.errors import EngineError
from updatectl.core.reconciler import OutputResult
from updatectl.core.schema import (
    EngineOptions,
    HostConfig,
    ReconcileOptions,
    RegistryConfig,
    UpdateConfig,
    UpdatectlConfig,
)
from updatectl.host.models import (
    PROPERTY_DEPENDENCIES,
    PROPERTY_PACKAGE_MANAGER,
    PROPERTY_SOURCE_REF_NAME,
    PullRequestProperty,
    PullRequestRecord,
)

USER_ID = "11111111-2222-3333-4444-555555555555"

CREATE_LODASH = OutputRecord(
    type="create_pull_request",
    data={
        "base-commit-sha": "abc123",
        "dependencies": [{"name": "lodash", "version": "4.17.21", "previous-version": "4.17.20"}],
        "updated-dependency-files": [{"name": "package.json", "content": "{}", "operation": "update"}],
        "pr-title": "Bump lodash",
    },
)
MARK_AS_PROCESSED = OutputRecord(type="mark_as_processed", data={"base-commit-sha": "abc123"})


def make_config(update=None, reconcile=None, engine=None, registries=None):
    return UpdatectlConfig(
        host=HostConfig(
            organization_url="https://dev.azure.com/contoso",
            project="web",
            repository="shop",
            access_token="host-pat",
        ),
        updates=[update or UpdateConfig(package_ecosystem="npm", directory="/", target_branch="main")],
        reconcile=reconcile or ReconcileOptions(),
        engine=engine or EngineOptions(),
        registries=registries or {},
    )


def existing_record(pr_id, name, branch):
    return PullRequestRecord(
        id=pr_id,
        properties=[
            PullRequestProperty(PROPERTY_PACKAGE_MANAGER, "npm_and_yarn"),
            PullRequestProperty(PROPERTY_DEPENDENCIES, json.dumps([{"dependency-name": name, "dependency-version": "1.0.0"}])),
            PullRequestProperty(PROPERTY_SOURCE_REF_NAME, f"refs/heads/{branch}"),
        ],
    )


def make_client(branches=("main",), pull_requests=()):
    client = MagicMock()
    client.get_user_id.return_value = USER_ID
    client.get_branch_names.return_value = list(branches) if branches is not None else None
    client.get_active_pull_requests_with_properties.return_value = list(pull_requests)
    client.create_pull_request.return_value = 42
    client.update_pull_request.return_value = True
    client.abandon_pull_request.return_value = True
    return client


def make_engine(outputs_by_job=None):
    """Engine mock returning canned records per job id."""
    outputs_by_job = outputs_by_job or {}
    engine = MagicMock()
    engine.update.side_effect = lambda job, **kwargs: list(outputs_by_job.get(job.id, []))
    return engine


def job_ids(engine):
    return [c.args[0].id for c in engine.update.call_args_list]


# ============================================================================
# Verdict
# ============================================================================


class TestSummarize:
    """Mapping output results to the run verdict."""

    def test_no_outputs_skipped(self):
        assert summarize([]) == RunResult.SKIPPED

    def test_all_succeeded(self):
        results = [OutputResult("a", True), OutputResult("b", True, skipped=True)]

        assert summarize(results) == RunResult.SUCCEEDED

    def test_some_failed(self):
        assert summarize([OutputResult("a", True), OutputResult("b", False)]) == RunResult.SUCCEEDED_WITH_ISSUES

    def test_all_failed(self):
        assert summarize([OutputResult("a", False), OutputResult("b", False)]) == RunResult.FAILED

    @pytest.mark.parametrize(
        "result,exit_code",
        [
            (RunResult.SUCCEEDED, 0),
            (RunResult.SUCCEEDED_WITH_ISSUES, 0),
            (RunResult.SKIPPED, 0),
            (RunResult.FAILED, 1),
        ],
    )
    def test_exit_code(self, result, exit_code):
        assert RunSummary(result=result, message="").exit_code == exit_code


class TestCollectSecrets:
    """Values registered for log masking."""

    def test_host_and_registry_secrets(self):
        config = make_config(
            update=UpdateConfig(package_ecosystem="npm", directory="/", registries=["feed"]),
            reconcile=ReconcileOptions(auto_approve=True, auto_approve_user_token="approver-pat"),
            registries={"feed": RegistryConfig(type="npm-registry", url="https://npm.example.com", token="npm-token")},
        )

        assert collect_secrets(config) == ["host-pat", "approver-pat", "npm-token"]


# ============================================================================
# Runner
# ============================================================================


class TestUpdateRunner:
    """Driving jobs and reconciliation for update blocks."""

    def test_creates_pull_request(self):
        client = make_client()
        engine = make_engine({"update-0-npm-all": [CREATE_LODASH, MARK_AS_PROCESSED]})

        summary = UpdateRunner(make_config(), client=client, engine=engine).run()

        assert summary.result == RunResult.SUCCEEDED
        assert summary.pull_request_ids == [42]
        assert job_ids(engine) == ["update-0-npm-all"]
        client.get_active_pull_requests_with_properties.assert_called_once_with("web", "shop", USER_ID)
        engine.cleanup.assert_called_once()

    def test_no_outputs_skipped(self):
        summary = UpdateRunner(make_config(), client=make_client(), engine=make_engine()).run()

        assert summary.result == RunResult.SKIPPED
        assert summary.exit_code == 0

    def test_all_outputs_failed(self):
        client = make_client()
        client.create_pull_request.return_value = None
        engine = make_engine({"update-0-npm-all": [CREATE_LODASH]})

        summary = UpdateRunner(make_config(), client=client, engine=engine).run()

        assert summary.result == RunResult.FAILED
        assert summary.exit_code == 1

    def test_engine_error_is_failed_result(self):
        engine = make_engine()
        engine.update.side_effect = EngineError("engine timed out")

        summary = UpdateRunner(make_config(), client=make_client(), engine=engine).run()

        assert summary.result == RunResult.FAILED
        assert summary.results[0].type == "engine"
        engine.cleanup.assert_called_once()

    def test_refreshes_existing_pull_requests(self):
        existing = existing_record(8, "lodash", "dependabot/npm/main/lodash-1.0.0")
        client = make_client(branches=["main", "dependabot/npm/main/lodash-1.0.0"], pull_requests=[existing])
        update_record = OutputRecord(
            type="update_pull_request",
            data={"base-commit-sha": "def456", "dependency-names": ["lodash"], "updated-dependency-files": []},
        )
        engine = make_engine({"update-pr-8": [update_record]})

        summary = UpdateRunner(make_config(), client=client, engine=engine).run()

        assert job_ids(engine) == ["update-0-npm-all", "update-pr-8"]
        all_job = engine.update.call_args_list[0].args[0].job
        assert [d.dependency_name for d in all_job.existing_pull_requests[0]] == ["lodash"]
        assert summary.result == RunResult.SUCCEEDED
        assert client.update_pull_request.call_args[0][0].pull_request_id == 8

    def test_skip_pull_requests_does_not_refresh(self):
        existing = existing_record(8, "lodash", "dependabot/npm/main/lodash-1.0.0")
        client = make_client(branches=["main", "dependabot/npm/main/lodash-1.0.0"], pull_requests=[existing])
        engine = make_engine()

        UpdateRunner(make_config(reconcile=ReconcileOptions(skip_pull_requests=True)), client=client, engine=engine).run()

        assert job_ids(engine) == ["update-0-npm-all"]

    def test_limit_reached_skips_update_all(self):
        existing = existing_record(8, "lodash", "dependabot/npm/main/lodash-1.0.0")
        client = make_client(branches=["main", "dependabot/npm/main/lodash-1.0.0"], pull_requests=[existing])
        engine = make_engine()
        update = UpdateConfig(package_ecosystem="npm", directory="/", target_branch="main", open_pull_requests_limit=1)

        UpdateRunner(make_config(update=update), client=client, engine=engine).run()

        assert job_ids(engine) == ["update-pr-8"]

    def test_abandons_pull_requests_with_deleted_branches(self):
        existing = existing_record(8, "lodash", "dependabot/npm/main/lodash-1.0.0")
        client = make_client(branches=["main"], pull_requests=[existing])
        engine = make_engine()

        UpdateRunner(make_config(), client=client, engine=engine).run()

        request = client.abandon_pull_request.call_args[0][0]
        assert request.pull_request_id == 8
        assert request.delete_source_branch is False
        assert request.comment is None
        assert job_ids(engine) == ["update-0-npm-all"]

    def test_stale_sweep_respects_dry_run(self):
        existing = existing_record(8, "lodash", "dependabot/npm/main/lodash-1.0.0")
        client = make_client(branches=["main"], pull_requests=[existing])

        UpdateRunner(make_config(reconcile=ReconcileOptions(dry_run=True)), client=client, engine=make_engine()).run()

        client.abandon_pull_request.assert_not_called()

    def test_stale_sweep_skipped_without_branch_list(self):
        existing = existing_record(8, "lodash", "dependabot/npm/main/lodash-1.0.0")
        client = make_client(branches=None, pull_requests=[existing])

        UpdateRunner(make_config(), client=client, engine=make_engine()).run()

        client.abandon_pull_request.assert_not_called()

    def test_security_only_updates_vulnerable_dependencies(self, tmp_path):
        advisories = tmp_path / "advisories.json"
        advisories.write_text(json.dumps([{"dependency-name": "lodash", "affected-versions": ["< 4.17.21"]}]))
        update = UpdateConfig(package_ecosystem="npm", directory="/", target_branch="main", open_pull_requests_limit=0)
        dependency_list = OutputRecord(
            type="update_dependency_list",
            data={"dependencies": [{"name": "lodash", "version": "4.17.20"}, {"name": "react", "version": "19.0.0"}]},
        )
        engine = make_engine({"discover-0-npm-dependency-list": [dependency_list]})

        UpdateRunner(
            make_config(update=update, engine=EngineOptions(security_advisories_file=str(advisories))),
            client=make_client(),
            engine=engine,
        ).run()

        assert job_ids(engine) == ["discover-0-npm-dependency-list", "update-0-npm-security-only"]
        job = engine.update.call_args_list[1].args[0].job
        assert job.dependencies == ["lodash"]
        assert job.security_updates_only is True

    def test_security_only_without_vulnerabilities(self):
        update = UpdateConfig(package_ecosystem="npm", directory="/", target_branch="main", open_pull_requests_limit=0)
        dependency_list = OutputRecord(
            type="update_dependency_list", data={"dependencies": [{"name": "react", "version": "19.0.0"}]}
        )
        engine = make_engine({"discover-0-npm-dependency-list": [dependency_list]})

        summary = UpdateRunner(make_config(update=update), client=make_client(), engine=engine).run()

        assert job_ids(engine) == ["discover-0-npm-dependency-list"]
        assert summary.result == RunResult.SUCCEEDED


# ============================================================================
# CLI
# ============================================================================

CONFIG_YAML = """\
host:
  organization_url: https://dev.azure.com/contoso
  project: web
  repository: shop
  access_token: host-pat
updates:
  - package-ecosystem: npm
    directory: /
"""


class TestMain:
    """The updatectl console script."""

    @patch("updatectl.cli.run.setup_logging")
    def test_missing_config(self, mock_logging, tmp_path):
        assert main(["-f", str(tmp_path / "missing.yaml")]) == 1

    @patch("updatectl.cli.run.setup_logging")
    def test_invalid_config(self, mock_logging, tmp_path):
        path = tmp_path / "updatectl.yaml"
        path.write_text("host: {}\nupdates: []\n")

        assert main(["-f", str(path)]) == 1

    @patch("updatectl.cli.run.setup_logging")
    @patch("updatectl.cli.run.UpdateRunner")
    def test_overrides_and_exit_code(self, mock_runner, mock_logging, tmp_path):
        path = tmp_path / "updatectl.yaml"
        path.write_text(CONFIG_YAML)
        mock_runner.return_value.run.return_value = RunSummary(result=RunResult.FAILED, message="0 ok")

        exit_code = main(["-f", str(path), "--dry-run", "--update", "0"])

        assert exit_code == 1
        config = mock_runner.call_args[0][0]
        assert config.reconcile.dry_run is True
        assert config.reconcile.target_update_ids == [0]

    @patch("updatectl.cli.run.setup_logging")
    @patch("updatectl.cli.run.UpdateRunner")
    def test_success(self, mock_runner, mock_logging, tmp_path):
        path = tmp_path / "updatectl.yaml"
        path.write_text(CONFIG_YAML)
        mock_runner.return_value.run.return_value = RunSummary(
            result=RunResult.SUCCEEDED, message="1 output(s) processed", results=[OutputResult("mark_as_processed", True)]
        )

        assert main(["-f", str(path)]) == 0
