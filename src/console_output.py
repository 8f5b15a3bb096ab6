"""
Console Output - Coloured, indented user-facing lines
Everything the user is meant to read goes through here; diagnostics go to logging
"""

import os
import re
import sys
from typing import Optional, TextIO

ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")


def strip_ansi_codes(text: str) -> str:
    """Strip ANSI color codes from text"""
    return ANSI_ESCAPE.sub("", text)


def color_supported(stream: TextIO) -> bool:
    """Colour only for terminals, and never when NO_COLOR is set"""
    if "NO_COLOR" in os.environ:
        return False
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


class ConsoleOutput:
    """Writes the orchestrator's messages to the terminal"""

    CYAN = "\033[36m"
    YELLOW = "\033[33m"
    GREEN = "\033[32m"
    RED = "\033[31m"
    GRAY = "\033[90m"
    WHITE = "\033[37m"

    RESET = "\033[0m"
    BOLD = "\033[1m"

    INDENT = "  "

    def __init__(self, stream: Optional[TextIO] = None, verbose: bool = False, color: Optional[bool] = None):
        self.stream = stream or sys.stdout
        self.verbose = verbose
        self.color = color_supported(self.stream) if color is None else color

    def paint(self, text: str, color: str, bold: bool = False) -> str:
        """Wrap text in a colour when colour is enabled"""
        if not self.color:
            return text
        prefix = color + (self.BOLD if bold else "")
        return f"{prefix}{text}{self.RESET}"

    def line(self, text: str = "", color: Optional[str] = None):
        """Print one indented line"""
        if text:
            text = self.INDENT + text
            if color:
                text = self.paint(text, color)
        print(text, file=self.stream, flush=True)

    def banner(self, version: str):
        self.line()
        self.line(f"⚡ devsession v{version}", self.CYAN)
        self.line()

    def progress(self, text: str):
        """Startup detail shown only with --verbose"""
        if self.verbose:
            self.line(text, self.GRAY)

    def ready(self, proxy_url: str, elapsed: float):
        """Block printed once the proxy is serving"""
        self.line(f"➜  Local:   {proxy_url}", self.CYAN)
        self.line()
        self.line(f"Ready in {elapsed:.1f}s", self.GREEN)
        self.line()
        self.line("Look for the overlay in your browser", self.WHITE)
        self.line("Press Ctrl+C to stop", self.GRAY)
        self.line()

    def error(self, message: str):
        """The single line reported for a fatal error"""
        self.line()
        self.line(f"✖ Error: {message}", self.RED)
        self.line()

    def warning(self, message: str):
        self.line(f"⚠️  {message}", self.YELLOW)

    def success(self, message: str):
        self.line(f"✅ {message}", self.GREEN)

    def stopping(self):
        """Shown when shutdown begins, verbose only"""
        if self.verbose:
            self.line()
            self.line("Stopping devsession...", self.GRAY)

    def stopped(self):
        self.line()
        self.line("devsession stopped", self.GRAY)
        self.line()
