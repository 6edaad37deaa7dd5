from __future__ import annotations

from foreman.executors.base import ExecuteOptions, SubprocessExecutor


class ClaudeCliExecutor(SubprocessExecutor):
    """One-shot ``claude -p`` invocation with the prompt piped over stdin."""

    name = "claude"
    prompt_via_stdin = True

    def __init__(self, binary: str = "claude") -> None:
        super().__init__(binary)

    def build_command(self, prompt: str, options: ExecuteOptions) -> list[str]:
        command = [self.binary, "-p", "--no-session-persistence"]
        if options.model:
            command.extend(["--model", options.model])
        if options.permission_mode and options.permission_mode != "default":
            command.extend(["--permission-mode", options.permission_mode])
        if options.permitted_operations:
            command.extend(["--allowedTools", ",".join(options.permitted_operations)])
        return command
