"""
Local display backed by an external popup program.

The popup is a separate executable (GUI toolkit of the operator's choice).
It is called as `<command> --mcp-request <file>` where <file> holds the
request as JSON, and prints the answer on stdout before exiting.
"""
import json
import logging
import os
import shlex
import subprocess
import tempfile

from askrelay.errors import SubprocessFailure
from askrelay.models import PendingRequest

log = logging.getLogger("askrelay.display")

CANCELLED = {"cancelled": True, "text": "user cancelled"}


class PopupCommand:
    """display(request) -> answer payload, one popup process per call."""

    def __init__(self, command, timeout: float | None = None):
        self.argv = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.argv:
            raise ValueError("display command must not be empty")
        self.timeout = timeout

    def __call__(self, request: PendingRequest) -> dict:
        timeout = self.timeout or request.remaining()
        if timeout <= 0:
            raise SubprocessFailure(f"request {request.id} expired before the popup opened")
        fd, path = tempfile.mkstemp(prefix="askrelay-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump({"id": request.id, **request.payload}, fh)
            log.debug("Showing request %s via %s", request.id, self.argv[0])
            try:
                proc = subprocess.run(
                    self.argv + ["--mcp-request", path],
                    capture_output=True, text=True, encoding="utf-8", errors="replace",
                    timeout=timeout,
                )
            except (OSError, subprocess.TimeoutExpired) as exc:
                raise SubprocessFailure(f"popup {self.argv[0]} failed: {exc}") from exc
        finally:
            try:
                os.unlink(path)
            except OSError:
                pass

        if proc.returncode != 0:
            raise SubprocessFailure(
                f"popup exited with code {proc.returncode}: {proc.stderr.strip()[:200]}")
        return parse_output(proc.stdout)


def parse_output(stdout: str) -> dict:
    text = stdout.strip()
    if not text:
        return dict(CANCELLED)
    try:
        parsed = json.loads(text)
    except ValueError:
        return {"text": text}
    return parsed if isinstance(parsed, dict) else {"text": text}
