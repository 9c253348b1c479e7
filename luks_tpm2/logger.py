"""
Console output for LUKS-TPM2
Colour-coded progress narration; errors and warnings go to stderr.
Key material must never be passed to any of these methods.
"""

import sys


# ANSI Color Codes
class Colors:
    """ANSI escape codes for terminal colors"""
    RESET = '\033[0m'
    ORANGE = '\033[38;5;214m'
    GREEN = '\033[38;5;46m'
    RED = '\033[38;5;196m'
    YELLOW = '\033[38;5;208m'
    CYAN = '\033[38;5;51m'


class Logger:
    """
    Centralized console output with color support.

    enabled: set False to silence all output (tests)
    verbose: set True to show debug messages
    """

    enabled: bool = True
    verbose: bool = False

    @staticmethod
    def _emit(text: str, stream=None) -> None:
        if not Logger.enabled:
            return
        stream = stream or sys.stdout
        if not stream.isatty():
            for code in (Colors.RESET, Colors.ORANGE, Colors.GREEN, Colors.RED,
                         Colors.YELLOW, Colors.CYAN):
                text = text.replace(code, '')
        print(text, file=stream)

    @staticmethod
    def success(message: str) -> None:
        """Print success message with green checkmark"""
        Logger._emit(f"{Colors.GREEN}✓{Colors.RESET} {message}")

    @staticmethod
    def error(message: str) -> None:
        """Print error message with red X"""
        Logger._emit(f"{Colors.RED}✗{Colors.RESET} {message}", sys.stderr)

    @staticmethod
    def info(message: str) -> None:
        Logger._emit(f"{Colors.CYAN}[INFO]{Colors.RESET} {message}")

    @staticmethod
    def warning(message: str) -> None:
        Logger._emit(f"{Colors.YELLOW}[WARNING]{Colors.RESET} {message}", sys.stderr)

    @staticmethod
    def debug(tag: str, message: str) -> None:
        """Print debug message with orange tag (verbose mode only)"""
        if Logger.verbose:
            Logger._emit(f"{Colors.ORANGE}[{tag}]{Colors.RESET} {message}")

    @staticmethod
    def header(text: str) -> None:
        """Print major header with separator"""
        Logger._emit(f"{Colors.CYAN}{'='*60}{Colors.RESET}")
        Logger._emit(f"{Colors.CYAN}{text}{Colors.RESET}")
        Logger._emit(f"{Colors.CYAN}{'='*60}{Colors.RESET}")

    @staticmethod
    def step(step_num: int, description: str) -> None:
        """Print numbered protocol step"""
        Logger._emit(f"\n{step_num}. {description}")

    @staticmethod
    def substep(message: str) -> None:
        Logger._emit(f"   {message}")

    @staticmethod
    def result(ok: bool, text: str) -> None:
        """Print final outcome banner, green on success and red on failure"""
        color = Colors.GREEN if ok else Colors.RED
        Logger._emit(f"\n{color}{'='*60}{Colors.RESET}", sys.stdout if ok else sys.stderr)
        Logger._emit(f"{color}{text}{Colors.RESET}", sys.stdout if ok else sys.stderr)
        Logger._emit(f"{color}{'='*60}{Colors.RESET}", sys.stdout if ok else sys.stderr)
