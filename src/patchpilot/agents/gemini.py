"""Google Gemini CLI agent provider."""

from patchpilot.agents.base import BaseCliAgent
from patchpilot.agents.protocol import AgentExecuteParams


class GeminiAgent(BaseCliAgent):
    """Provider for Google Gemini CLI, run in auto-approve (--yolo) mode."""

    @property
    def id(self) -> str:
        return "gemini"

    @property
    def name(self) -> str:
        return "Google Gemini"

    @property
    def cli_name(self) -> str:
        return "gemini"

    def build_command(self, params: AgentExecuteParams) -> list[str]:
        return [self.executable, "-p", params.prompt, "--yolo", "-o", "text"]
