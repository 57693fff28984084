import os
import shutil
import subprocess
import sys

from config.settings import DEFAULT_CAPTURE_BINARY


def _capture_binary_version(path):
    try:
        result = subprocess.run(
            [path, "--version"],
            capture_output=True,
            text=True,
            timeout=5,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    output = (result.stdout or result.stderr or "").strip()
    return output.splitlines()[0] if output else None


def get_runtime_info(capture_binary=DEFAULT_CAPTURE_BINARY):
    binary_path = shutil.which(capture_binary)
    return {
        "app_version": os.environ.get("STREAMKEEPER_VERSION", "0.0.0"),
        "python_version": sys.version.split()[0],
        "capture_binary": capture_binary,
        "capture_binary_path": binary_path,
        "capture_binary_version": _capture_binary_version(binary_path) if binary_path else None,
    }
