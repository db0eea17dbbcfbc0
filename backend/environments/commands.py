"""
Command execution utilities for PressDock drivers.
"""
import logging
import os
import subprocess
from typing import Dict, List, Optional, Tuple

from django.conf import settings

logger = logging.getLogger(__name__)


class CommandExecutor:
    """Runs external commands (php, mysql, docker) and captures their output."""

    def __init__(self, timeout: Optional[float] = None, cwd: Optional[str] = None,
                 env: Optional[Dict[str, str]] = None):
        """
        Initialize command executor.

        Args:
            timeout: Seconds before the command is killed (defaults to PRESSDOCK_COMMAND_TIMEOUT)
            cwd: Working directory for the command
            env: Extra environment variables layered over the current environment
        """
        self.timeout = timeout if timeout is not None else settings.PRESSDOCK_COMMAND_TIMEOUT
        self.cwd = cwd
        self.env = env

    def run_command(self, cmd: List[str], input_text: Optional[str] = None) -> Tuple[int, str, str]:
        """
        Run a command and return exit code, stdout, and stderr.

        Args:
            cmd: Command as list of strings
            input_text: Text written to the command's stdin

        Returns:
            Tuple of (exit_code, stdout, stderr)
        """
        env = None
        if self.env:
            env = dict(os.environ)
            env.update(self.env)
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                cwd=self.cwd,
                env=env,
                input=input_text,
                check=False
            )
            return result.returncode, result.stdout, result.stderr
        except subprocess.TimeoutExpired:
            logger.error(f"Command timeout: {' '.join(cmd)}")
            return 124, '', 'Command execution timeout'
        except FileNotFoundError:
            logger.error(f"Command not found: {cmd[0]}")
            return 127, '', f'{cmd[0]}: command not found'
        except OSError as e:
            logger.error(f"Command execution error: {e}")
            return 1, '', str(e)


def run_command(cmd: List[str], timeout: Optional[float] = None, cwd: Optional[str] = None,
                env: Optional[Dict[str, str]] = None, input_text: Optional[str] = None) -> Tuple[int, str, str]:
    """
    Convenience function to run a command.

    Returns:
        Tuple of (exit_code, stdout, stderr)
    """
    executor = CommandExecutor(timeout=timeout, cwd=cwd, env=env)
    return executor.run_command(cmd, input_text=input_text)
