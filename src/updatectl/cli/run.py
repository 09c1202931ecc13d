#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Run driver for updatectl.

For every selected update block: discover dependencies (security-only mode),
run the update-all job, then refresh each existing pull request, feeding all
engine output through one OutputReconciler. The run ends with a verdict:

    Succeeded             every output succeeded
    SucceededWithIssues   some succeeded, some failed
    Failed                every output failed
    Skipped               no output at all

Usage:
    updatectl -f updatectl.yaml
    updatectl -f updatectl.yaml --dry-run --update 0
"""

import argparse
import dataclasses
import logging
import sys
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from updatectl.contract.enums import OutputType, RunResult
from updatectl.contract.outputs import DependencyListData, OutputRecord, parse_output_data
from updatectl.core.config import (
    DEFAULT_CONFIG_FILE,
    load_config,
    load_security_advisories,
    parse_registries,
    select_updates,
)
from updatectl.core.errors import EngineError, UpdatectlError
from updatectl.core.job_builder import JobBuilder
from updatectl.core.reconciler import OutputReconciler, OutputResult
from updatectl.core.schema import JobDefinition, SecurityAdvisory, UpdateConfig, UpdatectlConfig
from updatectl.engine.cli import UpdateEngine
from updatectl.host.client import HostClient
from updatectl.host.models import AbandonPullRequest
from updatectl.logging_utils import PACKAGE, error, section, setup_logging, step, success, warn

logger = logging.getLogger(__name__)
console = Console()

ENGINE_RESULT_TYPE = "engine"


@dataclass
class RunSummary:
    """Verdict and details of one run, as reported to the caller."""

    result: RunResult
    message: str
    results: List[OutputResult] = field(default_factory=list)
    pull_request_ids: List[int] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return 1 if self.result == RunResult.FAILED else 0


def summarize(results: Sequence[OutputResult]) -> RunResult:
    """Map per-output results to the run verdict."""
    if not results:
        return RunResult.SKIPPED
    failed = sum(1 for r in results if not r.success)
    if failed == 0:
        return RunResult.SUCCEEDED
    if failed == len(results):
        return RunResult.FAILED
    return RunResult.SUCCEEDED_WITH_ISSUES


def collect_secrets(config: UpdatectlConfig) -> List[str]:
    """Every configured value that must never appear in logs."""
    secrets = [config.host.access_token, config.host.github_token, config.reconcile.auto_approve_user_token]
    for credential in parse_registries(config.registries).values():
        secrets.extend(credential.secrets)
    return [s for s in secrets if s]


class UpdateRunner:
    """Drives the engine and the reconciler for every selected update block.

    Args:
        config: Runner configuration
        client: Host client (default: built from config.host)
        engine: Update engine (default: built from config.engine)
        approver: Client for approval votes (default: built from auto_approve_user_token)
    """

    def __init__(
        self,
        config: UpdatectlConfig,
        client: Optional[HostClient] = None,
        engine: Optional[UpdateEngine] = None,
        approver: Optional[HostClient] = None,
    ):
        self.config = config
        self.host = config.host
        self.options = config.reconcile
        self.client = client or HostClient.from_config(config.host)
        self.engine = engine or UpdateEngine(
            config.engine, host_token=config.host.access_token, github_token=config.host.github_token
        )
        if approver is None and self.options.auto_approve and self.options.auto_approve_user_token:
            approver = HostClient.from_config(config.host, access_token=self.options.auto_approve_user_token)
        self.approver = approver
        self.builder = JobBuilder(config.host, config.engine, parse_registries(config.registries))
        self.reconciler: Optional[OutputReconciler] = None
        self._advisories: Optional[List[SecurityAdvisory]] = None

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def prepare(self) -> OutputReconciler:
        """Read branches and active pull requests once, before any job runs."""
        project, repository = self.host.project, self.host.repository
        user_id = self.client.get_user_id()
        branch_names = self.client.get_branch_names(project, repository)
        pull_requests = self.client.get_active_pull_requests_with_properties(project, repository, user_id)
        logger.info(f"Found {len(pull_requests)} active pull request(s) created by updatectl")

        self.reconciler = OutputReconciler(
            client=self.client,
            project=project,
            repository=repository,
            options=self.options,
            existing_branch_names=branch_names,
            existing_pull_requests=pull_requests,
            approver=self.approver,
        )
        return self.reconciler

    def abandon_stale_pull_requests(self) -> List[int]:
        """Abandon pull requests whose source branch no longer exists."""
        reconciler = self.reconciler
        assert reconciler is not None
        if reconciler.existing_branch_names is None:
            logger.warning("Branch list unavailable; not checking for stale pull requests")
            return []

        branches = set(reconciler.existing_branch_names)
        stale = [
            pr
            for pr in reconciler.existing_pull_requests
            if pr.source_branch and pr.source_branch not in branches
        ]
        abandoned: List[int] = []
        for pr in stale:
            if self.options.dry_run or not self.options.abandon_unwanted_pull_requests:
                warn(f"Pull request #{pr.id} has lost its source branch '{pr.source_branch}'", logger)
                continue
            comment = None
            if self.options.comment_pull_requests:
                comment = (
                    f"The source branch '{pr.source_branch}' of this pull request no longer exists, "
                    "so this is no longer needed."
                )
            if self.client.abandon_pull_request(
                AbandonPullRequest(
                    project=self.host.project,
                    repository=self.host.repository,
                    pull_request_id=pr.id,
                    comment=comment,
                    delete_source_branch=False,
                )
            ):
                abandoned.append(pr.id)
            reconciler.forget_pull_request(pr.id)
        return abandoned

    def security_advisories(self) -> List[SecurityAdvisory]:
        if self._advisories is None:
            advisories_file = self.config.engine.security_advisories_file
            if advisories_file:
                self._advisories = load_security_advisories(advisories_file)
            else:
                warn("No security advisories file configured; security-only updates will find nothing", logger)
                self._advisories = []
        return self._advisories

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _run_job(self, update: UpdateConfig, job: JobDefinition) -> tuple[List[OutputRecord], List[OutputResult]]:
        """Run one job through the engine and reconcile its outputs."""
        assert self.reconciler is not None
        step(f"Running job {job.id}", logger)
        try:
            records = self.engine.update(job)
        except EngineError as e:
            error(f"Job {job.id} failed: {e}", logger)
            return [], [OutputResult(type=ENGINE_RESULT_TYPE, success=False, error=e, message=str(e))]
        results = self.reconciler.process_all(update, job, records)
        return records, results

    def run_update(self, index: int, update: UpdateConfig) -> List[OutputResult]:
        """Run every job for one update block."""
        assert self.reconciler is not None
        update_id = str(index)
        package_manager = update.package_manager
        section(f"Update #{index}: {update.package_ecosystem} ({update.directory or update.directories})", PACKAGE)

        existing = list(self.reconciler.pull_requests_for(package_manager))
        identities = [pr.identity for pr in existing if pr.identity is not None]
        results: List[OutputResult] = []

        dependency_names: Optional[List[str]] = None
        advisories: Optional[List[SecurityAdvisory]] = None
        if update.security_updates_only:
            discovery = self.builder.list_all_dependencies_job(update_id, update)
            records, discovery_results = self._run_job(update, discovery)
            results.extend(discovery_results)
            dependency_names = []
            for record in records:
                if record.type == OutputType.UPDATE_DEPENDENCY_LIST.value:
                    data = parse_output_data(record)
                    assert isinstance(data, DependencyListData)
                    dependency_names = [d.name for d in data.dependencies or []]
            advisories = self.security_advisories()

        limit = update.open_pull_requests_limit
        if limit > 0 and len(existing) >= limit:
            warn(f"Open pull request limit ({limit}) reached; skipping update of all dependencies", logger)
        else:
            job = self.builder.update_all_dependencies_job(
                update_id, update, dependency_names, identities, advisories
            )
            if update.security_updates_only and not job.job.dependencies:
                logger.info("No vulnerable dependencies found; skipping security-only update")
            else:
                results.extend(self._run_job(update, job)[1])

        if self.options.skip_pull_requests:
            warn("Pull request changes are disabled; not refreshing existing pull requests", logger)
            return results

        for pr in existing:
            still_open = any(p.id == pr.id for p in self.reconciler.pull_requests_for(package_manager))
            identity = pr.identity
            if not still_open or identity is None:
                continue
            job = self.builder.update_pull_request_job(pr.id, update, identities, identity, advisories)
            results.extend(self._run_job(update, job)[1])

        return results

    def run(self) -> RunSummary:
        """Run every selected update block and return the verdict."""
        self.prepare()
        assert self.reconciler is not None

        abandoned = self.abandon_stale_pull_requests()
        if abandoned:
            logger.info(f"Abandoned {len(abandoned)} pull request(s) with deleted source branches")

        results: List[OutputResult] = []
        try:
            for index, update in select_updates(self.config):
                results.extend(self.run_update(index, update))
        finally:
            self.engine.cleanup()

        verdict = summarize(results)
        failed = sum(1 for r in results if not r.success)
        created = self.reconciler.created_pull_request_ids
        message = f"{len(results)} output(s) processed, {failed} failed, {len(created)} pull request(s) created"
        touched = created + [r.pull_request_id for r in results if r.pull_request_id and r.pull_request_id not in created]
        return RunSummary(result=verdict, message=message, results=results, pull_request_ids=touched)


# ============================================================================
# CLI
# ============================================================================


def print_summary(summary: RunSummary) -> None:
    table = Table(title="Output results")
    table.add_column("Output type", style="cyan")
    table.add_column("Succeeded", justify="right", style="green")
    table.add_column("Skipped", justify="right", style="yellow")
    table.add_column("Failed", justify="right", style="red")

    succeeded = Counter(r.type for r in summary.results if r.success and not r.skipped)
    skipped = Counter(r.type for r in summary.results if r.success and r.skipped)
    failed = Counter(r.type for r in summary.results if not r.success)
    for output_type in sorted(set(succeeded) | set(skipped) | set(failed)):
        table.add_row(
            output_type, str(succeeded[output_type]), str(skipped[output_type]), str(failed[output_type])
        )

    console.print()
    if summary.results:
        console.print(table)
    style = {
        RunResult.SUCCEEDED: "green",
        RunResult.SUCCEEDED_WITH_ISSUES: "yellow",
        RunResult.FAILED: "red",
        RunResult.SKIPPED: "dim",
    }[summary.result]
    console.print(Panel(summary.message, title=f"Result: {summary.result.value}", border_style=style))


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="updatectl - dependency update pull requests",
        epilog="""Examples:
  updatectl -f updatectl.yaml                   # Run every update block
  updatectl -f updatectl.yaml --dry-run         # Run the engine, change nothing
  updatectl -f updatectl.yaml --update 0        # Run only the first update block
""",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-f", "--file", type=Path, default=Path(DEFAULT_CONFIG_FILE), dest="config", help="YAML config file"
    )
    parser.add_argument("--dry-run", action="store_true", help="Do not create, update or close pull requests")
    parser.add_argument(
        "--update", type=int, action="append", dest="update_ids", help="Only run this update index (repeatable)"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    masking_filter = setup_logging(level=logging.DEBUG if args.verbose else logging.INFO)

    if not args.config.exists():
        console.print(f"[bold red]Config not found:[/] {args.config}")
        return 1

    try:
        config = load_config(args.config)
        masking_filter.add(*collect_secrets(config))

        reconcile = config.reconcile
        if args.dry_run:
            reconcile = dataclasses.replace(reconcile, dry_run=True)
        if args.update_ids:
            reconcile = dataclasses.replace(reconcile, target_update_ids=list(args.update_ids))
        config = dataclasses.replace(config, reconcile=reconcile)

        summary = UpdateRunner(config).run()
    except (UpdatectlError, FileNotFoundError) as e:
        console.print(f"[bold red]Error:[/] {e}")
        logging.debug("Full traceback:", exc_info=True)
        return 1

    print_summary(summary)
    if summary.result == RunResult.SUCCEEDED:
        success(summary.message, logger)
    return summary.exit_code


if __name__ == "__main__":
    sys.exit(main())
