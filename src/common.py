"""Common utilities for infrastructure reconciliation."""

import logging
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Return codes synthesized when the command did not complete
RC_TIMEOUT = -1
RC_NOT_RUN = 127


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None,
    input_data: Optional[str] = None,
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            input=input_data,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return RC_TIMEOUT, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return RC_NOT_RUN, '', str(e)


def parse_var_assignments(values: Optional[list[str]]) -> dict:
    """Parse repeated name=value CLI arguments.

    Values 'true'/'false' (any case) become booleans; everything else stays
    a string.

    Raises:
        ValueError: If an entry has no '='
    """
    result: dict = {}
    for item in values or []:
        if '=' not in item:
            raise ValueError(f"Expected name=value, got '{item}'")
        name, value = item.split('=', 1)
        lowered = value.strip().lower()
        if lowered in ('true', 'false'):
            result[name.strip()] = lowered == 'true'
        else:
            result[name.strip()] = value
    return result
