"""OpenAI Codex CLI agent provider."""

from patchpilot.agents.base import BaseCliAgent
from patchpilot.agents.protocol import AgentExecuteParams


class CodexAgent(BaseCliAgent):
    """Provider for OpenAI Codex CLI.

    ``codex exec --full-auto`` applies edits without asking for approval;
    ``-C`` pins its working root to the sandbox.
    """

    @property
    def id(self) -> str:
        return "codex"

    @property
    def name(self) -> str:
        return "Codex CLI"

    @property
    def cli_name(self) -> str:
        return "codex"

    def build_command(self, params: AgentExecuteParams) -> list[str]:
        return [
            self.executable,
            "exec",
            "--full-auto",
            "-C",
            params.working_directory,
            params.prompt,
        ]
