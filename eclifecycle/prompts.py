"""
Operator prompts for interactive restore steps.
"""

from getpass import getpass
from typing import Callable


class Prompter:
    """Asks the operator questions on the terminal."""

    def __init__(self, assume_yes: bool = False,
                 input_func: Callable[[str], str] = input,
                 password_func: Callable[[str], str] = getpass):
        self.assume_yes = assume_yes
        self._input = input_func
        self._password = password_func

    def confirm(self, message: str, default: bool = True) -> bool:
        """Yes/no question. With assume_yes the default answer is taken."""
        if self.assume_yes:
            return default
        suffix = "[Y/n]" if default else "[y/N]"
        while True:
            answer = self._input(f"{message} {suffix} ").strip().lower()
            if not answer:
                return default
            if answer in ("y", "yes"):
                return True
            if answer in ("n", "no"):
                return False

    def input(self, message: str, default: str = "", required: bool = False) -> str:
        while True:
            answer = self._input(f"{message} ").strip()
            if answer:
                return answer
            if default or not required:
                return default

    def password(self, message: str, required: bool = True) -> str:
        while True:
            answer = self._password(f"{message} ")
            if answer or not required:
                return answer
