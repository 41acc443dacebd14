"""Utility functions, process wrapper and notification system for kvm-borg."""

import os
import sys
import logging
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import IO, Dict, Optional, Sequence, Type, Union

from .exceptions import KvmBorgError


class NotificationManager:
    """Console and file logging for a run."""

    def __init__(self, config):
        """Initialize notification manager.

        Args:
            config: Configuration object
        """
        self.config = config
        self.logger = self._setup_logger()
        self.use_unicode = self._check_unicode_support()

    def _check_unicode_support(self) -> bool:
        """Check if the terminal supports Unicode characters."""
        try:
            "✅".encode(sys.stdout.encoding or 'utf-8')
            return True
        except (UnicodeEncodeError, LookupError):
            return False

    def _setup_logger(self) -> logging.Logger:
        """Setup logging configuration."""
        logger = logging.getLogger('kvmborg')

        # Clear existing handlers
        logger.handlers.clear()

        level = getattr(logging, str(self.config.get('notifications.level', 'INFO')).upper(), logging.INFO)
        logger.setLevel(level)

        if self.config.get('notifications.console', True):
            console_handler = logging.StreamHandler(sys.stdout)
            console_formatter = logging.Formatter(
                '%(asctime)s - %(levelname)s - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_handler.setFormatter(console_formatter)
            logger.addHandler(console_handler)

        log_file = self.config.get('notifications.file')
        if log_file:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_formatter)
            logger.addHandler(file_handler)

        return logger

    def _format_message(self, message: str, prefix: str) -> str:
        """Format message with appropriate prefix based on Unicode support."""
        if self.use_unicode:
            return f"{prefix} {message}"
        ascii_prefixes = {
            "✅": "[SUCCESS]",
            "❌": "[FAILED]",
        }
        return f"{ascii_prefixes.get(prefix, prefix)} {message}"

    def debug(self, message: str) -> None:
        self.logger.debug(message)

    def info(self, message: str) -> None:
        """Log info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log error message."""
        self.logger.error(message)

    def success(self, message: str) -> None:
        """Log success message."""
        self.logger.info(self._format_message(message, "✅"))

    def failure(self, message: str) -> None:
        """Log failure message."""
        self.logger.error(self._format_message(message, "❌"))


@dataclass
class CommandResult:
    """Outcome of an external command.

    ``run_command`` never raises for a failing tool; callers decide which
    error the failure maps to with ``check``.
    """

    args: Sequence[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def diagnostic(self) -> str:
        """Best available error text, stderr first."""
        return (self.stderr or self.stdout or "").strip()

    def check(self, error_cls: Type[KvmBorgError], message: str) -> "CommandResult":
        """Raise ``error_cls`` carrying the tool's diagnostic unless the command succeeded."""
        if not self.ok:
            raise error_cls(
                message,
                command=self.args,
                returncode=self.returncode,
                stderr=self.diagnostic,
            )
        return self


def run_command(
    command: Sequence[str],
    timeout: Optional[float] = None,
    env: Optional[Dict[str, str]] = None,
    stdin: Optional[IO] = None,
) -> CommandResult:
    """Run a command and capture its output.

    Args:
        command: Command and arguments
        timeout: Seconds before the command is killed (None waits forever)
        env: Extra environment variables layered over the current environment
        stdin: File object connected to the command's standard input

    Returns:
        CommandResult; an OS error starting the command or a timeout is
        reported as a failed result rather than raised. Undecodable output
        bytes are replaced, never raised
    """
    logger = logging.getLogger('kvmborg')
    logger.debug(f"Running command: {' '.join(command)}")

    child_env = None
    if env:
        child_env = dict(os.environ)
        child_env.update(env)

    try:
        result = subprocess.run(
            list(command),
            stdin=stdin,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
            env=child_env,
            check=False
        )
    except FileNotFoundError:
        return CommandResult(command, 127, stderr=f"command not found: {command[0]}")
    except OSError as e:
        return CommandResult(command, 126, stderr=f"cannot run {command[0]}: {e}")
    except subprocess.TimeoutExpired:
        return CommandResult(command, 124, stderr=f"command timed out after {timeout}s")

    logger.debug(f"Command completed with return code {result.returncode}")
    return CommandResult(command, result.returncode, result.stdout or "", result.stderr or "")


def generate_timestamp(moment: Optional[datetime] = None) -> str:
    """Generate timestamp string for archive naming.

    Returns:
        Timestamp string in format YYYYMMDD_HHMMSS
    """
    return (moment or datetime.now()).strftime("%Y%m%d_%H%M%S")


def ensure_directory(path: Union[str, Path]) -> Path:
    """Ensure directory exists, create if it doesn't."""
    path_obj = Path(path)
    path_obj.mkdir(parents=True, exist_ok=True)
    return path_obj
