"""Operator confirmation injected into workflows that mutate existing objects."""
import logging
from abc import ABC, abstractmethod
from typing import List

from rich.console import Console
from rich.prompt import Confirm

logger = logging.getLogger(__name__)


class ConfirmationProvider(ABC):
    @abstractmethod
    def confirm(self, question: str) -> bool:
        pass


class RichConfirmation(ConfirmationProvider):
    """Interactive Y/N prompt on the operator's terminal."""

    def __init__(self, console: Console = None):
        self.console = console or Console()

    def confirm(self, question: str) -> bool:
        return Confirm.ask(f"[bold yellow]{question}[/bold yellow]", console=self.console, default=False)


class StaticConfirmation(ConfirmationProvider):
    """Answers every question the same way (``--yes`` / ``--no`` and tests)."""

    def __init__(self, answer: bool):
        self.answer = answer
        self.questions: List[str] = []

    def confirm(self, question: str) -> bool:
        self.questions.append(question)
        logger.info("Auto-%s: %s", "confirmed" if self.answer else "declined", question)
        return self.answer
