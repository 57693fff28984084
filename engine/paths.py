import os
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent

def _is_container_runtime():
    if os.path.exists("/.dockerenv"):
        return True
    return os.path.isdir("/data")


def _default_root_paths():
    if _is_container_runtime():
        return {
            "data": Path("/data"),
            "config": Path("/config"),
            "recordings": Path("/recordings"),
            "logs": Path("/logs"),
        }
    base = PROJECT_ROOT / "data"
    return {
        "data": base,
        "config": base / "config",
        "recordings": base / "recordings",
        "logs": base / "logs",
    }


_DEFAULTS = _default_root_paths()

DATA_DIR = Path(os.environ.get("STREAMKEEPER_DATA_DIR", _DEFAULTS["data"])).resolve()
CONFIG_DIR = Path(os.environ.get("STREAMKEEPER_CONFIG_DIR", _DEFAULTS["config"])).resolve()
RECORDINGS_DIR = Path(os.environ.get("STREAMKEEPER_RECORDINGS_DIR", _DEFAULTS["recordings"])).resolve()
LOG_DIR = Path(os.environ.get("STREAMKEEPER_LOG_DIR", _DEFAULTS["logs"])).resolve()
DB_PATH = Path(os.environ.get("STREAMKEEPER_DB_PATH", DATA_DIR / "database" / "streamkeeper.sqlite")).resolve()


@dataclass(frozen=True)
class EnginePaths:
    log_dir: str
    db_path: str
    recordings_dir: str
    config_dir: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def resolve_config_path(path):
    if not path:
        return os.path.join(CONFIG_DIR, "config.json")
    if os.path.isabs(path):
        return os.path.abspath(path)
    return os.path.abspath(os.path.join(CONFIG_DIR, path))


def build_engine_paths(*, recordings_dir=None):
    recordings = Path(recordings_dir).resolve() if recordings_dir else RECORDINGS_DIR

    # Ensure required directories exist
    for d in (
        DB_PATH.parent,
        recordings,
        LOG_DIR,
        CONFIG_DIR,
    ):
        ensure_dir(d)

    return EnginePaths(
        log_dir=str(LOG_DIR),
        db_path=str(DB_PATH),
        recordings_dir=str(recordings),
        config_dir=str(CONFIG_DIR),
    )
