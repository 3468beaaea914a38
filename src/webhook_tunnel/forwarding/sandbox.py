import asyncio
import json
import math
import os
import signal
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger
from pydantic import BaseModel

from webhook_tunnel.common.metrics import metrics
from webhook_tunnel.common.models import Event, OriginRequest, encode_body

if sys.platform != "win32":
    import resource
else:
    resource = None

DEFAULT_TIMEOUT_MS = 5000
DEFAULT_MEMORY_LIMIT_MB = 128
RUNNER_PATH = Path(__file__).with_name("sandbox_runner.py")
# The child sees none of the host environment
SANDBOX_ENV: Dict[str, str] = {}
HAS_PROCESS_GROUPS = hasattr(os, "killpg")


class TransformResult(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None


class ValidationResult(BaseModel):
    valid: bool
    output: Any = None
    error: Optional[str] = None


def build_context(event: Event) -> Dict[str, Any]:
    """Serializable view of an event handed to sandboxed code."""
    request = event.origin_request
    body = request.parsed_body()
    return {
        "event": {
            "id": event.id,
            "endpoint_id": event.endpoint_id,
            "source": event.source,
            "timestamp": event.timestamp.isoformat() if event.timestamp else None,
        },
        "request": {
            "method": request.method,
            "headers": dict(request.headers),
            "body": body,
            "source_url": request.source_url,
            "content_type": request.content_type,
        },
        "body": body,
        "headers": dict(request.headers),
    }


def _limit_resources(memory_limit_mb: int, cpu_seconds: int):
    limits = (
        (resource.RLIMIT_AS, memory_limit_mb * 1024 * 1024),
        (resource.RLIMIT_CPU, cpu_seconds),
    )

    def apply():
        for limit, value in limits:
            # An unprivileged process may only lower its hard limit
            _, hard = resource.getrlimit(limit)
            if hard != resource.RLIM_INFINITY:
                value = min(value, hard)
            resource.setrlimit(limit, (value, value))

    return apply


class TransformationSandbox:
    """Runs untrusted transform code in a resource-limited child interpreter.

    Data crosses the boundary only as JSON: the context goes in on stdin and
    the result comes back on stdout. The child starts with an empty
    environment in a scratch directory and gets a wall-clock timeout. On
    POSIX it also runs in its own session under an address-space and
    CPU-time ceiling, and its whole process group is killed once it is done.
    """

    def __init__(
        self,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        memory_limit_mb: int = DEFAULT_MEMORY_LIMIT_MB,
        python_executable: Optional[str] = None,
    ):
        self.timeout_ms = timeout_ms
        self.memory_limit_mb = memory_limit_mb
        self.python_executable = python_executable or sys.executable

    async def transform(self, code: Optional[str], event: Event) -> TransformResult:
        context = build_context(event)
        if not code or not code.strip():
            return TransformResult(success=True, data=context["body"])
        return await self.run(code, context)

    async def validate(self, code: str, sample_input: Any) -> ValidationResult:
        """Run code against a synthetic event whose body is ``sample_input``."""
        body = json.dumps(sample_input)
        event = Event(
            id="evt_sample",
            endpoint_id="wh_sample",
            source="*",
            origin_request=OriginRequest(
                method="POST",
                headers={"content-type": "application/json"},
                body=encode_body(body),
                source_url="https://example.com/webhook",
                content_type="application/json",
                size=len(body),
                client_ip="127.0.0.1",
            ),
        )
        result = await self.transform(code, event)
        if result.success:
            return ValidationResult(valid=True, output=result.data)
        return ValidationResult(valid=False, error=result.error)

    async def run(self, code: str, context: Dict[str, Any]) -> TransformResult:
        try:
            payload = json.dumps({"code": code, "context": context}, default=str).encode("utf-8")
        except (TypeError, ValueError) as e:
            return self._failure("error", f"Context is not serializable: {e}")

        preexec_fn = None
        if resource is not None:
            cpu_seconds = math.ceil(self.timeout_ms / 1000) + 1
            preexec_fn = _limit_resources(self.memory_limit_mb, cpu_seconds)

        with tempfile.TemporaryDirectory(prefix="webhook-tunnel-sandbox-") as workdir:
            try:
                process = await asyncio.create_subprocess_exec(
                    self.python_executable,
                    "-I",
                    str(RUNNER_PATH),
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=SANDBOX_ENV,
                    cwd=workdir,
                    preexec_fn=preexec_fn,
                    start_new_session=HAS_PROCESS_GROUPS,
                )
            except (OSError, subprocess.SubprocessError) as e:
                return self._failure("error", f"Failed to start sandbox: {e}")

            try:
                stdout, stderr = await asyncio.wait_for(
                    process.communicate(payload), timeout=self.timeout_ms / 1000
                )
            except asyncio.TimeoutError:
                # Descendants may still hold the output pipes open
                self._kill_group(process)
                self._kill(process)
                await process.wait()
                return self._failure(
                    "timeout", f"Transformation timed out after {self.timeout_ms}ms"
                )
            finally:
                # Nothing the transform started may outlive it
                self._kill_group(process)

        return self._parse_output(process.returncode, stdout, stderr)

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        try:
            process.kill()
        except ProcessLookupError:
            pass

    @staticmethod
    def _kill_group(process: asyncio.subprocess.Process) -> None:
        if not HAS_PROCESS_GROUPS:
            return
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            logger.warning(f"Failed to kill sandbox process group {process.pid}: {e}")

    def _parse_output(self, returncode: int, stdout: bytes, stderr: bytes) -> TransformResult:
        try:
            document = json.loads(stdout.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            document = None

        if isinstance(document, dict) and "ok" in document:
            if document["ok"]:
                metrics.sandbox_runs_total.labels(outcome="success").inc()
                return TransformResult(success=True, data=document.get("data"))
            return self._failure("error", document.get("error") or "Unknown transformation error")

        if returncode is not None and returncode < 0:
            signum = -returncode
            if signum == getattr(signal, "SIGXCPU", None):
                return self._failure(
                    "timeout", f"Transformation exceeded its CPU budget of {self.timeout_ms}ms"
                )
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            return self._failure("error", f"Sandbox process terminated by signal {name}")

        detail = stderr.decode("utf-8", errors="replace").strip().splitlines()
        message = f"Sandbox process exited with code {returncode}"
        if detail:
            message = f"{message}: {detail[-1]}"
        return self._failure("error", message)

    def _failure(self, outcome: str, error: str) -> TransformResult:
        metrics.sandbox_runs_total.labels(outcome=outcome).inc()
        logger.warning(f"Transformation failed: {error}")
        return TransformResult(success=False, error=error)
