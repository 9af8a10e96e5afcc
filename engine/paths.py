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
            "logs": Path("/logs"),
        }
    base = PROJECT_ROOT / "data"
    return {
        "data": base,
        "logs": base / "logs",
    }


_DEFAULTS = _default_root_paths()

DATA_DIR = Path(os.environ.get("AUDIOGRAB_DATA_DIR", _DEFAULTS["data"])).resolve()
LOG_DIR = Path(os.environ.get("AUDIOGRAB_LOG_DIR", _DEFAULTS["logs"])).resolve()
WORK_DIR = Path(os.environ.get("AUDIOGRAB_WORK_DIR", DATA_DIR / "work")).resolve()


@dataclass(frozen=True)
class EnginePaths:
    log_dir: str
    work_dir: str
    oneshot_dir: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def build_engine_paths(work_dir=None, log_dir=None):
    work = Path(work_dir or WORK_DIR)
    logs = Path(log_dir or LOG_DIR)
    oneshot = work / "oneshot"

    for d in (work, oneshot, logs):
        ensure_dir(d)

    return EnginePaths(
        log_dir=str(logs),
        work_dir=str(work),
        oneshot_dir=str(oneshot),
    )


def cleanup_dir(path):
    """Delete every file below ``path`` and recreate it empty.

    Returns ``(deleted_files, deleted_bytes)``.
    """
    deleted_files = 0
    deleted_bytes = 0
    if not os.path.isdir(path):
        return deleted_files, deleted_bytes
    for root, dirs, files in os.walk(path, topdown=False):
        for name in files:
            file_path = os.path.join(root, name)
            try:
                deleted_bytes += os.path.getsize(file_path)
            except OSError:
                pass
            try:
                os.remove(file_path)
                deleted_files += 1
            except OSError:
                pass
        for name in dirs:
            dir_path = os.path.join(root, name)
            try:
                os.rmdir(dir_path)
            except OSError:
                pass
    ensure_dir(path)
    return deleted_files, deleted_bytes


def safe_unlink(path):
    """Remove ``path`` if it exists. Returns ``True`` when a file was removed."""
    if not path:
        return False
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
