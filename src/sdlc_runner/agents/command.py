"""Run an agent CLI (claude, codex, ...) as a subprocess."""

from __future__ import annotations

import logging
import shlex
import subprocess
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Optional

from ..config import AgentConfig
from ..constants import RUNS_DIR, STATE_DIR_NAME
from ..git_utils import _diff_file_sets, _git_changed_files, _git_is_repo
from ..io_utils import _read_text_tail
from ..models import AgentInvocationResult
from ..utils import _now_iso
from .base import AgentRequest
from .errors import classify_api_error

logger = logging.getLogger(__name__)


def _stream_pipe(pipe: Any, file_path: Path) -> None:
    with open(file_path, "w") as handle:
        for line in iter(pipe.readline, ""):
            handle.write(line)
            handle.flush()
    pipe.close()


class CommandAgentInvoker:
    """Invoke an agent by running a configured shell command.

    The command receives the prompt on stdin when it contains a bare ``-``
    argument, or through the ``{prompt_file}`` / ``{prompt}`` placeholders.
    stdout/stderr are captured under ``.sdlc/runs/<run-id>/``.
    """

    name = "command"

    def __init__(self, config: Optional[AgentConfig] = None):
        config = config or AgentConfig()
        self.command = config.command
        self.timeout_seconds = config.timeout_seconds

    def _format_command(self, prompt: str, prompt_path: Path, request: AgentRequest, run_dir: Path) -> tuple[list[str], bool]:
        try:
            formatted = self.command.format(
                prompt_file=str(prompt_path),
                project_dir=str(request.working_directory),
                run_dir=str(run_dir),
                prompt=prompt,
            )
        except KeyError as exc:
            raise ValueError(f"Unknown placeholder in agent command: {exc}") from exc
        parts = shlex.split(formatted)
        uses_placeholder = "{prompt_file}" in self.command or "{prompt}" in self.command
        expects_stdin = "-" in parts
        if not uses_placeholder and not expects_stdin:
            raise ValueError("Agent command must include {prompt_file}, {prompt}, or '-' to accept stdin input.")
        return parts, (expects_stdin and not uses_placeholder)

    def invoke(self, request: AgentRequest) -> AgentInvocationResult:
        project_dir = request.working_directory
        run_id = f"{time.strftime('%Y%m%dT%H%M%S')}-{uuid.uuid4().hex[:6]}"
        run_dir = project_dir / STATE_DIR_NAME / RUNS_DIR / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        prompt_path = run_dir / "prompt.txt"
        prompt_path.write_text(request.prompt)

        command_parts, use_stdin = self._format_command(request.prompt, prompt_path, request, run_dir)
        track_files = _git_is_repo(project_dir)
        before = _git_changed_files(project_dir) if track_files else []

        stdout_path = run_dir / "stdout.log"
        stderr_path = run_dir / "stderr.log"
        logger.info("Starting agent run %s (%s/%s): %s", run_id, request.phase, request.role, command_parts[0])
        started = _now_iso()

        process = subprocess.Popen(
            command_parts,
            cwd=project_dir,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            bufsize=1,
        )
        threads = [
            threading.Thread(target=_stream_pipe, args=(process.stdout, stdout_path), daemon=True),
            threading.Thread(target=_stream_pipe, args=(process.stderr, stderr_path), daemon=True),
        ]
        for thread in threads:
            thread.start()

        if process.stdin:
            try:
                if use_stdin:
                    process.stdin.write(request.prompt)
                    process.stdin.flush()
                process.stdin.close()
            except BrokenPipeError:
                logger.warning("Agent process closed stdin early (run %s)", run_id)

        timed_out = False
        try:
            process.wait(timeout=self.timeout_seconds)
        except subprocess.TimeoutExpired:
            timed_out = True
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()

        for thread in threads:
            thread.join(timeout=5)

        output = stdout_path.read_text(errors="replace") if stdout_path.exists() else ""
        stderr_tail = _read_text_tail(stderr_path, max_chars=4000)
        files_changed: list[str] = []
        if track_files:
            files_changed = _diff_file_sets(before, _git_changed_files(project_dir))

        metadata = {"run_id": run_id, "started_at": started, "finished_at": _now_iso()}
        if timed_out:
            error = f"Agent timed out after {self.timeout_seconds}s"
            logger.warning("Agent run %s timed out", run_id)
            return AgentInvocationResult(
                success=False, output=output, error=error, files_changed=files_changed, transient=True
            )
        if process.returncode != 0:
            error = stderr_tail.strip() or f"Agent exited with code {process.returncode}"
            logger.warning("Agent run %s failed with exit code %s", run_id, process.returncode)
            return AgentInvocationResult(
                success=False,
                output=output,
                error=error,
                files_changed=files_changed,
                transient=classify_api_error(error) == "transient",
            )
        logger.info("Agent run %s finished (%d files changed) %s", run_id, len(files_changed), metadata)
        return AgentInvocationResult(success=True, output=output, files_changed=files_changed)
