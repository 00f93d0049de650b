"""Terminal progress display and prompts.

``ProgressContext`` carries the step/substep counters explicitly so the
storage layer only says *what* is happening; this module decides how it
looks:

    ━━━ Step 2/4: Wiping device /dev/sdb
      ├─ [1/3] Unmounting all partitions
      ├─> Unmounting /dev/sdb*
      └─ [3/3] Refreshing partition table
"""

from __future__ import annotations

import sys
from typing import Callable, Optional, TextIO

from rescarch_media.storage.sizes import format_iec

RED = "\033[0;31m"
GREEN = "\033[0;32m"
YELLOW = "\033[1;33m"
BLUE = "\033[0;34m"
CYAN = "\033[0;36m"
BOLD_CYAN = "\033[1;36m"
NC = "\033[0m"

RULE = "━" * 66


class ProgressContext:
    """Step and substep progress for one command run."""

    def __init__(
        self,
        total_steps: int = 0,
        stream: Optional[TextIO] = None,
        error_stream: Optional[TextIO] = None,
        color: Optional[bool] = None,
    ):
        self.total_steps = total_steps
        self.current_step = 0
        self.current_substep = 0
        self.total_substeps = 0
        self.stream = stream or sys.stdout
        self.error_stream = error_stream or sys.stderr
        if color is None:
            color = hasattr(self.stream, "isatty") and self.stream.isatty()
        self.color = color

    def _paint(self, text: str, color: str) -> str:
        return f"{color}{text}{NC}" if self.color else text

    def _out(self, text: str = "") -> None:
        print(text, file=self.stream, flush=True)

    @property
    def _on_last_substep(self) -> bool:
        return self.total_substeps > 0 and self.current_substep == self.total_substeps

    def begin_step(self, name: str, total_substeps: int = 0) -> None:
        self.current_step += 1
        self.current_substep = 0
        self.total_substeps = total_substeps
        self._out()
        self._out(self._paint(RULE, BOLD_CYAN))
        self._out(
            self._paint(f"━━━ Step {self.current_step}/{self.total_steps}: {name}", BOLD_CYAN)
        )
        self._out(self._paint(RULE, BOLD_CYAN))

    def substep(self, name: str) -> None:
        self.current_substep += 1
        tree = "└─" if self._on_last_substep else "├─"
        if self.total_substeps > 0:
            line = f"  {tree} [{self.current_substep}/{self.total_substeps}] {name}"
        else:
            line = f"  {tree} {name}"
        self._out(self._paint(line, CYAN))

    def info(self, message: str) -> None:
        tree = " ─>" if self._on_last_substep else "├─>"
        self._out(self._paint(f"  {tree} {message}", BLUE))

    def success(self, message: str) -> None:
        self._out(self._paint(f"SUCCESS: {message}", GREEN))

    def warning(self, message: str) -> None:
        self._out(self._paint(f"WARNING: {message}", YELLOW))

    def error(self, message: str) -> None:
        text = f"ERROR: {message}"
        if self.color:
            text = f"{RED}{text}{NC}"
        print(text, file=self.error_stream, flush=True)

    def cleanup_message(self, message: str) -> None:
        if message == "Cleanup":
            self._out()
            self._out(self._paint("═══ Cleanup ═══", YELLOW))
        else:
            self._out(self._paint(f"  {message}", YELLOW))

    def plain(self, message: str = "") -> None:
        self._out(message)

    def copy_progress(self, total_bytes: int) -> Callable[[int, Optional[float]], None]:
        """Callback for raw copy progress lines."""

        def report(copied: int, rate: Optional[float]) -> None:
            percent = f" {copied / total_bytes * 100:.1f}%" if total_bytes else ""
            rate_text = f" {format_iec(int(rate))}/s" if rate else ""
            self.info(f"Wrote {format_iec(copied)}{percent}{rate_text}")

        return report


Prompt = Callable[[str], str]


def console_prompt(question: str) -> str:
    """Read one line of input from the terminal."""
    return input(question)


def confirm_typed(prompt: Prompt, question: str, expected: str = "YES") -> bool:
    """True only if the user types ``expected`` exactly."""
    return prompt(question).strip() == expected


def confirm_yes_no(prompt: Prompt, question: str) -> bool:
    """y/N question defaulting to no."""
    return prompt(question).strip().lower() in ("y", "yes")
