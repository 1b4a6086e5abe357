"""
Operator interaction: prompts and the import confirmation gate.
"""
from __future__ import annotations

import getpass
from abc import ABC, abstractmethod

AFFIRMATIVE_ANSWERS = frozenset({"y", "yes"})


def is_affirmative(answer: str | None) -> bool:
    """Only an explicit yes counts; empty input means no."""
    return (answer or "").strip().lower() in AFFIRMATIVE_ANSWERS


class Prompter(ABC):
    """Source of interactive answers."""

    @abstractmethod
    def ask(self, question: str, secret: bool = False) -> str:
        """Ask a question and return the trimmed answer ("" if none)."""

    def ask_with_default(self, label: str, default: str | None = None, secret: bool = False) -> str:
        question = f"{label} [{default}]: " if default not in (None, "") and not secret else f"{label}: "
        answer = self.ask(question, secret=secret)
        return answer if answer else (default or "")

    def ask_yes_no(self, question: str, default: bool) -> bool:
        hint = "[Y/n]" if default else "[y/N]"
        answer = self.ask(f"{question} {hint}: ").strip().lower()
        if not answer:
            return default
        return answer in AFFIRMATIVE_ANSWERS


class ConsolePrompter(Prompter):
    """Prompts on the terminal; passwords are read without echo."""

    def ask(self, question: str, secret: bool = False) -> str:
        """End of input (Ctrl-D) counts as an empty answer."""
        try:
            if secret:
                return getpass.getpass(question).strip()
            return input(question).strip()
        except EOFError:
            print()
            return ""


class ConfirmationGate(ABC):
    """Decides whether the import phase may mutate the target."""

    @abstractmethod
    def confirm(self, message: str) -> bool:
        ...


class PromptConfirmation(ConfirmationGate):
    """Ask the operator; anything but an explicit yes declines."""

    def __init__(self, prompter: Prompter):
        self.prompter = prompter

    def confirm(self, message: str) -> bool:
        return is_affirmative(self.prompter.ask(f"{message} [y/N]: "))


class PresetConfirmation(ConfirmationGate):
    """Answer supplied up front (e.g. --yes); defaults to declining."""

    def __init__(self, answer: bool = False):
        self.answer = answer

    def confirm(self, message: str) -> bool:
        return self.answer
