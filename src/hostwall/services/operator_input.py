"""Operator input sources.

Values given on the command line are used as-is; anything missing is
asked for interactively. Validation happens later, in the orchestrator.
"""

from abc import ABC, abstractmethod
from typing import Optional

from hostwall.core.exceptions import ValidationError
from hostwall.core.output import Console


class InputSource(ABC):
    """Where the three operator answers come from."""

    @abstractmethod
    def hostname(self) -> str:
        """System hostname used to name the rule files."""

    @abstractmethod
    def team_addresses(self) -> str:
        """Space-separated addresses allowed to SSH in."""

    @abstractmethod
    def dc_addresses(self) -> str:
        """Space-separated domain controller addresses."""


class PromptInputSource(InputSource):
    """Ask the operator on the terminal."""

    def __init__(self, console: Console) -> None:
        self.console = console

    def _ask(self, prompt: str) -> str:
        try:
            return self.console.input(prompt)
        except (EOFError, KeyboardInterrupt) as e:
            raise ValidationError(
                "Input aborted",
                hint="Pass --hostname, --team-ips and --dc-ips to run unattended",
            ) from e

    def hostname(self) -> str:
        return self._ask("Enter system hostname: ")

    def team_addresses(self) -> str:
        return self._ask("Enter Team IPs (space separated): ")

    def dc_addresses(self) -> str:
        return self._ask("Enter Domain Controller IPs (space separated): ")


class StaticInputSource(InputSource):
    """Answers supplied up front, with an optional source for the gaps."""

    def __init__(
        self,
        hostname: Optional[str] = None,
        team_addresses: Optional[str] = None,
        dc_addresses: Optional[str] = None,
        fallback: Optional[InputSource] = None,
    ) -> None:
        self._hostname = hostname
        self._team = team_addresses
        self._dc = dc_addresses
        self.fallback = fallback

    def _missing(self, option: str) -> ValidationError:
        return ValidationError(
            f"No value for {option}",
            hint=f"Pass {option} or run interactively",
        )

    def hostname(self) -> str:
        if self._hostname is not None:
            return self._hostname
        if self.fallback is None:
            raise self._missing("--hostname")
        return self.fallback.hostname()

    def team_addresses(self) -> str:
        if self._team is not None:
            return self._team
        if self.fallback is None:
            raise self._missing("--team-ips")
        return self.fallback.team_addresses()

    def dc_addresses(self) -> str:
        if self._dc is not None:
            return self._dc
        if self.fallback is None:
            raise self._missing("--dc-ips")
        return self.fallback.dc_addresses()
