"""
Interactive prompts

The only points where a key lifecycle operation waits on a human:
  - Initialize confirmation
  - Passphrase entry (existing LUKS passphrase, new temporary passphrase)
  - Owner / parent authorization retry inside the sealing adapter
"""

import getpass
import sys
from typing import Optional

from .errors import LuksTpmError
from .logger import Logger


class PromptAborted(LuksTpmError):
    """Raised when input ends (EOF / Ctrl-C) while waiting on the operator"""
    pass


class Prompter:
    """Terminal prompts. Replaced by a MagicMock in tests."""

    def __init__(self, assume_yes: bool = False):
        """
        Args:
            assume_yes: Answer confirmation questions with "yes" without asking
        """
        self.assume_yes = assume_yes

    def confirm(self, question: str) -> bool:
        """
        Ask a yes/no question. Anything but y/yes is a no.
        """
        if self.assume_yes:
            return True
        try:
            answer = input(f"{question} [y/N] ")
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            return False
        return answer.strip().lower() in ("y", "yes")

    def passphrase(self, prompt: str, verify: bool = False) -> bytes:
        """
        Read a passphrase without echo.

        Args:
            prompt: Text shown to the operator
            verify: Ask a second time and require both entries to match

        Returns:
            Passphrase bytes (UTF-8, no trailing newline)

        Raises:
            PromptAborted: On EOF/interrupt, empty input or mismatch
        """
        first = self._read_secret(f"{prompt}: ")
        if not first:
            raise PromptAborted("Empty passphrase")
        if verify:
            second = self._read_secret("Verify passphrase: ")
            if first != second:
                raise PromptAborted("Passphrases do not match")
        return first.encode("utf-8")

    def credential(self, what: str) -> Optional[bytes]:
        """
        Ask for a TPM authorization value (owner or parent password).

        Returns:
            Credential bytes, or None if the operator gave nothing
        """
        Logger.warning(f"TPM requires {what} authorization")
        try:
            value = self._read_secret(f"Enter {what} password: ")
        except PromptAborted:
            return None
        return value.encode("utf-8") if value else None

    @staticmethod
    def _read_secret(prompt: str) -> str:
        try:
            return getpass.getpass(prompt)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            raise PromptAborted("Input aborted")
