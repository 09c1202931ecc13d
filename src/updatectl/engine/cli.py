# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Update engine invocation.

The update engine is an external CLI that reads a Job Definition file and
writes a scenario file with the ordered list of output records. This module
owns the per-job workspace, installs the engine when it is missing, launches
it, relays its log, and parses what it wrote.

A non-zero engine exit code is not an error here: the engine reports its own
failures as `record_update_job_error` records, so whatever output exists is
still read.
"""

import logging
import os
import shutil
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Optional

import yaml
from pydantic import ValidationError

from updatectl.contract.outputs import OutputRecord
from updatectl.core.errors import EngineError
from updatectl.core.schema import EngineOptions, JobDefinition

logger = logging.getLogger(__name__)

ENGINE_EXECUTABLE = "dependabot"
INPUT_FILE_NAME = "job.yaml"
OUTPUT_FILE_NAME = "scenario.yaml"

# Log components of the engine that are only interesting when debugging
QUIET_COMPONENTS = ("proxy", "collector")

# Extra wall-clock time allowed on top of the engine's own --timeout
TIMEOUT_GRACE_SECONDS = 60


@dataclass(frozen=True)
class JobWorkspace:
    """Per-job working directory and the files inside it."""

    job_id: str
    path: Path

    @property
    def input_path(self) -> Path:
        return self.path / INPUT_FILE_NAME

    @property
    def output_path(self) -> Path:
        return self.path / OUTPUT_FILE_NAME


@dataclass(frozen=True)
class EngineRun:
    """Outcome of one engine invocation."""

    job_id: str
    output_path: Path
    exit_code: Optional[int]
    skipped: bool = False

    @property
    def succeeded(self) -> bool:
        return self.skipped or self.exit_code == 0


def engine_job_id(job_id: str) -> str:
    """Job id in the engine's identifier syntax (no hyphens)."""
    return job_id.replace("-", "_")


def relay_engine_output(stream: IO[str]) -> None:
    """Forward engine log lines; proxy and collector chatter goes to DEBUG."""
    for raw_line in stream:
        line = raw_line.rstrip("\n")
        if not line.strip():
            continue
        component = line.split("|", 1)[0].strip().lower() if "|" in line else ""
        if component in QUIET_COMPONENTS:
            logger.debug(line)
        else:
            logger.info(line)


class UpdateEngine:
    """Runs the update engine CLI for Job Definitions.

    Usage:
        with UpdateEngine(options, host_token=token) as engine:
            outputs = engine.update(job)

    Args:
        options: Engine options (images, timeout, install package, jobs root)
        host_token: Hosting platform token, exported for the engine's local runs
        github_token: github.com token, exported to avoid registry rate limiting
    """

    def __init__(
        self,
        options: Optional[EngineOptions] = None,
        host_token: Optional[str] = None,
        github_token: Optional[str] = None,
    ):
        self.options = options or EngineOptions()
        self.host_token = host_token
        self.github_token = github_token
        root = self.options.jobs_root or os.path.join(tempfile.gettempdir(), "dependabot-jobs")
        self.jobs_root = Path(root)
        self._executable: Optional[str] = None

    def __enter__(self) -> "UpdateEngine":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.cleanup()

    # ------------------------------------------------------------------
    # Workspace
    # ------------------------------------------------------------------

    def prepare_workspace(self, job_id: str) -> JobWorkspace:
        """Create (or reuse) the isolated directory for one job."""
        path = self.jobs_root / job_id
        path.mkdir(parents=True, exist_ok=True)
        return JobWorkspace(job_id=job_id, path=path)

    def cleanup(self) -> None:
        """Remove every job workspace. Safe to call when no job ran."""
        if self.jobs_root.exists():
            logger.debug(f"Removing engine workspace {self.jobs_root}")
            shutil.rmtree(self.jobs_root, ignore_errors=True)

    # ------------------------------------------------------------------
    # Installation
    # ------------------------------------------------------------------

    def _installed_executable(self) -> Optional[str]:
        found = shutil.which(ENGINE_EXECUTABLE)
        if found:
            return found

        # `go install` puts binaries under $GOPATH/bin, which is often not on PATH
        gopath = os.environ.get("GOPATH") or os.path.join(os.path.expanduser("~"), "go")
        candidate = os.path.join(gopath, "bin", ENGINE_EXECUTABLE)
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
        return None

    def ensure_engine_available(self) -> str:
        """Locate the engine executable, installing it with `go install` if needed.

        Returns:
            Path to the engine executable

        Raises:
            EngineError: If the engine is missing and cannot be installed
        """
        if self._executable:
            return self._executable

        executable = self._installed_executable()
        if executable is None:
            logger.info(f"Engine not found, installing {self.options.package}")
            try:
                subprocess.run(
                    ["go", "install", self.options.package],
                    check=True,
                    capture_output=True,
                    text=True,
                )
            except FileNotFoundError as e:
                raise EngineError("Engine is not installed and the Go toolchain is not available") from e
            except subprocess.CalledProcessError as e:
                raise EngineError(f"Failed to install {self.options.package}: {e.stderr.strip()}") from e

            executable = self._installed_executable()
            if executable is None:
                raise EngineError(f"Installed {self.options.package} but '{ENGINE_EXECUTABLE}' is still not found")

        logger.debug(f"Using engine at {executable}")
        self._executable = executable
        return executable

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def build_command(self, executable: str, workspace: JobWorkspace) -> list[str]:
        command = [
            executable,
            "update",
            "--file",
            str(workspace.input_path),
            "--output",
            str(workspace.output_path),
        ]
        if self.options.collector_image:
            command += ["--collector-image", self.options.collector_image]
        if self.options.collector_config:
            command += ["--collector-config", self.options.collector_config]
        if self.options.proxy_image:
            command += ["--proxy-image", self.options.proxy_image]
        if self.options.updater_image:
            command += ["--updater-image", self.options.updater_image]
        if self.options.timeout_minutes:
            command += ["--timeout", f"{self.options.timeout_minutes}m"]
        if self.options.flamegraph:
            command.append("--flamegraph")
        return command

    def build_environment(self, job_id: str) -> dict[str, str]:
        env = dict(os.environ)
        env["DEPENDABOT_JOB_ID"] = engine_job_id(job_id)
        if self.github_token:
            env["LOCAL_GITHUB_ACCESS_TOKEN"] = self.github_token
        if self.host_token:
            env["LOCAL_AZURE_ACCESS_TOKEN"] = self.host_token
        return env

    def default_timeout(self) -> Optional[float]:
        if not self.options.timeout_minutes:
            return None
        return self.options.timeout_minutes * 60 + TIMEOUT_GRACE_SECONDS

    def run(self, job: JobDefinition, workspace: JobWorkspace, timeout: Optional[float] = None) -> EngineRun:
        """Write the job file and run the engine unless output already exists.

        Args:
            job: Job Definition to execute
            workspace: Workspace from prepare_workspace()
            timeout: Seconds to wait for the engine (default: from options)

        Returns:
            EngineRun describing the invocation

        Raises:
            EngineError: If the engine cannot be launched or times out
        """
        workspace.input_path.write_text(job.to_yaml())

        output_path = workspace.output_path
        if output_path.exists() and output_path.stat().st_size > 0:
            logger.info(f"Skipping engine for {job.id}: output already present at {output_path}")
            return EngineRun(job_id=job.id, output_path=output_path, exit_code=None, skipped=True)

        executable = self.ensure_engine_available()
        command = self.build_command(executable, workspace)
        if timeout is None:
            timeout = self.default_timeout()

        logger.info(f"Running engine for job {job.id}")
        logger.debug(f"Command: {' '.join(command)}")

        try:
            proc = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env=self.build_environment(job.id),
                cwd=str(workspace.path),
            )
        except OSError as e:
            raise EngineError(f"Failed to launch engine: {e}") from e

        reader = threading.Thread(target=relay_engine_output, args=(proc.stdout,), daemon=True)
        reader.start()

        try:
            exit_code = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            self._terminate(proc)
            # A half-written scenario must not be picked up by a later resume
            output_path.unlink(missing_ok=True)
            raise EngineError(f"Engine timed out after {timeout}s for job {job.id}") from e
        finally:
            reader.join(timeout=5)

        if exit_code != 0:
            logger.warning(f"Engine exited with code {exit_code} for job {job.id}")
        return EngineRun(job_id=job.id, output_path=output_path, exit_code=exit_code)

    @staticmethod
    def _terminate(proc: subprocess.Popen, timeout: float = 10.0) -> None:
        """Terminate the engine gracefully, then kill if needed."""
        proc.terminate()
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Engine did not terminate, killing...")
            proc.kill()
            proc.wait(timeout=5)

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def read_outputs(self, output_path: Path) -> list[OutputRecord]:
        """Parse the engine's scenario file into ordered output records.

        A missing or empty file yields no records.

        Raises:
            EngineError: If the file exists but is not a valid scenario
        """
        output_path = Path(output_path)
        if not output_path.exists() or output_path.stat().st_size == 0:
            logger.debug(f"No engine output at {output_path}")
            return []

        try:
            with open(output_path) as f:
                scenario = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise EngineError(f"Engine output {output_path} is not valid YAML: {e}") from e

        if scenario is None:
            return []
        if not isinstance(scenario, dict) or not isinstance(scenario.get("output", []), list):
            raise EngineError(f"Engine output {output_path} has no 'output' list")

        records: list[OutputRecord] = []
        for index, entry in enumerate(scenario.get("output") or []):
            if not isinstance(entry, dict):
                raise EngineError(f"Engine output record #{index} is not a mapping")
            expect = entry.get("expect") or {}
            if not isinstance(expect, dict):
                raise EngineError(f"Engine output record #{index} has an invalid 'expect' section")
            try:
                records.append(OutputRecord(type=entry.get("type"), data=expect.get("data") or {}))
            except ValidationError as e:
                raise EngineError(f"Engine output record #{index} is invalid: {e}") from e

        logger.debug(f"Read {len(records)} output record(s) from {output_path}")
        return records

    def update(self, job: JobDefinition, timeout: Optional[float] = None) -> list[OutputRecord]:
        """Run one job end to end and return its output records."""
        workspace = self.prepare_workspace(job.id)
        run = self.run(job, workspace, timeout=timeout)
        return self.read_outputs(run.output_path)
