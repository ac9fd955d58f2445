import os
import tempfile
from pathlib import Path

HOME_DIR = Path(os.environ.get("IMGFORGE_HOME", Path.home() / ".imgforge")).expanduser()
SCRATCH_DIR = Path(os.environ.get("IMGFORGE_SCRATCH_DIR", "/tmp"))
UPLOAD_DIR = Path(os.environ.get("IMGFORGE_UPLOAD_DIR", "/tmp/imgforge-uploads"))
WORKDIR = Path(os.environ.get("IMGFORGE_WORKDIR", "/workdir"))


def images_dir() -> Path:
    d = HOME_DIR / "images"
    d.mkdir(parents=True, exist_ok=True)
    return d


def configs_dir() -> Path:
    d = HOME_DIR / "configs"
    d.mkdir(parents=True, exist_ok=True)
    return d


def upload_dir() -> Path:
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    return UPLOAD_DIR


def ensure_layout() -> None:
    images_dir()
    configs_dir()
    upload_dir()


def scratch_path(job_id: str, suffix: str) -> Path:
    SCRATCH_DIR.mkdir(parents=True, exist_ok=True)
    return SCRATCH_DIR / f"imgforge-{job_id}{suffix}"


def job_env_path(job_id: str) -> Path:
    return scratch_path(job_id, ".env")


def job_log_path(job_id: str) -> Path:
    return scratch_path(job_id, ".log")


def job_compose_path(job_id: str) -> Path:
    return scratch_path(job_id, "-compose.yml")


def job_script_path(job_id: str) -> Path:
    return scratch_path(job_id, "-script.sh")


def job_config_path(job_id: str) -> Path:
    return configs_dir() / f"{job_id}.env"


def last_run_path(workdir: Path) -> Path:
    return Path(workdir) / "last-run.env"


def write_text_atomic(path: Path, content: str, mode: int = 0o644) -> Path:
    """Write through a sibling temp file and rename, so readers never see a partial file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise
    return path
