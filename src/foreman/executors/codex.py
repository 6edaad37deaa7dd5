from __future__ import annotations

from foreman.executors.base import ExecuteOptions, SubprocessExecutor


class CodexCliExecutor(SubprocessExecutor):
    name = "codex"
    prompt_via_stdin = False

    def __init__(self, binary: str = "codex") -> None:
        super().__init__(binary)

    def build_command(self, prompt: str, options: ExecuteOptions) -> list[str]:
        command = [self.binary, "exec", "-C", str(options.cwd)]
        if options.permission_mode and options.permission_mode != "default":
            command.append("--full-auto")
        if options.model:
            command.extend(["-m", options.model])
        command.append(prompt)
        return command
