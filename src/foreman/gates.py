from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from pathlib import Path

from foreman.models import GateResult, QualityGate

logger = logging.getLogger(__name__)

OUTPUT_LIMIT = 5000
FAILURE_TAIL_LINES = 20
KILL_GRACE_SECONDS = 2.0


def tail_truncate(text: str, limit: int = OUTPUT_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return "...(truncated)\n" + text[-limit:]


def _gate_env(cwd: Path) -> dict[str, str]:
    env = os.environ.copy()
    local_bins = [cwd / "node_modules" / ".bin", cwd / ".venv" / "bin"]
    prefix = [str(path) for path in local_bins if path.is_dir()]
    if prefix:
        env["PATH"] = os.pathsep.join([*prefix, env.get("PATH", "")])
    return env


def _terminate_process_group(process: subprocess.Popen[str]) -> None:
    if process.poll() is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGTERM)
    except OSError:
        process.terminate()
    try:
        process.wait(timeout=KILL_GRACE_SECONDS)
        return
    except subprocess.TimeoutExpired:
        pass
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except OSError:
        process.kill()
    process.wait(timeout=KILL_GRACE_SECONDS)


class GateSession:
    """Tracks the gate process in flight so another thread can stop the remaining gates."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._process: subprocess.Popen[str] | None = None
        self.cancelled = False

    def attach(self, process: subprocess.Popen[str]) -> bool:
        with self._lock:
            if self.cancelled:
                return False
            self._process = process
            return True

    def detach(self) -> None:
        with self._lock:
            self._process = None

    def cancel(self) -> None:
        with self._lock:
            self.cancelled = True
            process = self._process
        if process is not None:
            _terminate_process_group(process)


def run_gate(gate: QualityGate, cwd: Path, session: GateSession | None = None) -> GateResult:
    """Run one gate command through the shell, killing its whole process group on timeout."""
    start = time.monotonic()
    command_text = gate.command.strip()
    if not command_text:
        return GateResult(gate=gate, passed=False, output="Command is empty.", duration_ms=0)

    try:
        process = subprocess.Popen(
            command_text,
            cwd=cwd,
            shell=True,
            env=_gate_env(cwd),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            start_new_session=True,
        )
    except OSError as exc:
        return GateResult(
            gate=gate,
            passed=False,
            output=f"Failed to start gate command: {exc}",
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    if session is not None and not session.attach(process):
        _terminate_process_group(process)

    timed_out = False
    try:
        stdout, stderr = process.communicate(timeout=gate.timeout_seconds)
    except subprocess.TimeoutExpired:
        timed_out = True
        _terminate_process_group(process)
        stdout, stderr = process.communicate()
    finally:
        if session is not None:
            session.detach()

    duration_ms = int((time.monotonic() - start) * 1000)
    output = "\n".join(part for part in (stdout, stderr) if part)
    cancelled = session is not None and session.cancelled
    if timed_out:
        logger.warning("Gate %s timed out after %ss: %s", gate.type, gate.timeout_seconds, command_text)
        output = f"{output}\nGate timed out after {gate.timeout_seconds}s".lstrip("\n")
    elif cancelled:
        output = f"{output}\nGate cancelled".lstrip("\n")
    passed = not timed_out and not cancelled and process.returncode == 0
    return GateResult(
        gate=gate,
        passed=passed,
        output=tail_truncate(output),
        duration_ms=duration_ms,
    )


def run_all_gates(
    gates: list[QualityGate],
    cwd: Path,
    session: GateSession | None = None,
) -> list[GateResult]:
    results: list[GateResult] = []
    for gate in gates:
        if session is not None and session.cancelled:
            break
        result = run_gate(gate, cwd, session)
        logger.debug(
            "Gate %s %s in %sms", gate.type, "passed" if result.passed else "failed", result.duration_ms
        )
        results.append(result)
    return results


def all_required_passed(results: list[GateResult]) -> bool:
    return all(result.passed or not result.gate.required for result in results)


def format_gate_results(results: list[GateResult]) -> str:
    lines: list[str] = []
    for result in results:
        marker = "[+]" if result.passed else "[x]"
        optional = "" if result.gate.required else " (optional)"
        lines.append(
            f"  {marker} {result.gate.type}: {result.gate.command}{optional} ({result.duration_ms}ms)"
        )
        if not result.passed and result.output:
            for line in result.output.splitlines()[-FAILURE_TAIL_LINES:]:
                lines.append(f"      {line}")
    return "\n".join(lines)

