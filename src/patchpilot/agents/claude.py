"""Claude Code CLI agent provider."""

from patchpilot.agents.base import BaseCliAgent
from patchpilot.agents.protocol import AgentExecuteParams


class ClaudeCodeAgent(BaseCliAgent):
    """Provider for Anthropic Claude Code CLI.

    Runs ``claude -p <prompt>`` non-interactively in the sandbox. Claude Code
    refuses to start inside another Claude Code session, so the session
    markers are removed from the child's environment.
    """

    stripped_env = ("CLAUDECODE", "CLAUDE_CODE_SESSION")

    @property
    def id(self) -> str:
        return "claude-code"

    @property
    def name(self) -> str:
        return "Claude Code"

    @property
    def cli_name(self) -> str:
        return "claude"

    def build_command(self, params: AgentExecuteParams) -> list[str]:
        return [self.executable, "-p", params.prompt]
