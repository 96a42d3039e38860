"""OpenCode CLI agent provider."""

from patchpilot.agents.base import BaseCliAgent
from patchpilot.agents.protocol import AgentExecuteParams


class OpenCodeAgent(BaseCliAgent):
    @property
    def id(self) -> str:
        return "opencode"

    @property
    def name(self) -> str:
        return "OpenCode"

    @property
    def cli_name(self) -> str:
        return "opencode"

    def build_command(self, params: AgentExecuteParams) -> list[str]:
        return [self.executable, "run", params.prompt]
