"""
Shared subprocess utilities for ffmpeg and ffprobe
"""

import subprocess
import logging
from typing import Optional, Any

logger = logging.getLogger(__name__)


class SubprocessError(Exception):
    """Custom exception for subprocess errors"""
    pass


def safe_subprocess_run(
    cmd,
    operation_name="FFmpeg operation",
    custom_logger: Optional[Any] = None,
    timeout: Optional[float] = None,
):
    """
    Safely run subprocess with proper error handling

    Args:
        cmd: Command to run as list of strings
        operation_name: Descriptive name for the operation (for logging)
        custom_logger: Optional logger to use instead of default
        timeout: Optional wall-clock limit in seconds

    Returns:
        subprocess.CompletedProcess result

    Raises:
        SubprocessError: If subprocess fails, times out or the binary is missing
    """
    active_logger = custom_logger or logger

    try:
        active_logger.debug("Running %s: %s", operation_name, " ".join(str(x) for x in cmd))
        result = subprocess.run(
            [str(x) for x in cmd],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            check=True,
            timeout=timeout,
        )
        return result
    except subprocess.CalledProcessError as e:
        error_msg = f"{operation_name} failed with return code {e.returncode}"
        if e.stderr:
            # ffmpeg prints its banner first; the cause is at the end
            error_msg += f"\nstderr: {e.stderr[-2000:]}"
        active_logger.error(error_msg)
        raise SubprocessError(error_msg) from e
    except subprocess.TimeoutExpired as e:
        error_msg = f"{operation_name} timed out after {e.timeout}s"
        active_logger.error(error_msg)
        raise SubprocessError(error_msg) from e
    except OSError as e:
        if isinstance(e, FileNotFoundError):
            error_msg = f"{operation_name} failed: {cmd[0]} not found. Please ensure FFmpeg is installed and in PATH."
        else:
            error_msg = f"{operation_name} failed with OS/Permission error: {e}"
        active_logger.error(error_msg)
        raise SubprocessError(error_msg) from e
