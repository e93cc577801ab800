"""Data directory discovery and ``config.yaml`` loading."""

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from .models import GraceWindow

logger = logging.getLogger(__name__)

DATA_DIR_NAME = ".reasongraph"
DB_FILE_NAME = "reasongraph.db"
CONFIG_FILE_NAME = "config.yaml"
LOG_FILE_NAME = "reasongraph.log"

ENV_DB_PATH = "REASONGRAPH_DB_PATH"


class BranchConfig(BaseModel):
    main_branches: list[str] = Field(default_factory=lambda: ["main", "master"])
    auto_detect: bool = True


class PatchConfig(BaseModel):
    directory: str | None = None  # default: <data dir>/patches
    author: str | None = None  # default: git user.name, then $USER


class TraceConfig(BaseModel):
    grace_window: GraceWindow = "link"
    preview_chars: int = 500
    record_attempts: int = 3
    record_backoff_seconds: float = 0.1
    hosts: list[str] = Field(default_factory=lambda: ["api.anthropic.com"])


class StoreConfig(BaseModel):
    lock_attempts: int = 5
    lock_backoff_seconds: float = 0.05


class Config(BaseModel):
    branch: BranchConfig = Field(default_factory=BranchConfig)
    patches: PatchConfig = Field(default_factory=PatchConfig)
    trace: TraceConfig = Field(default_factory=TraceConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)

    def is_main_branch(self, branch: str) -> bool:
        return branch in self.branch.main_branches

    def patch_dir(self, data_dir: Path) -> Path:
        if self.patches.directory:
            path = Path(self.patches.directory)
            return path if path.is_absolute() else data_dir.parent / path
        return data_dir / "patches"


DEFAULT_CONFIG_YAML = """\
# reasongraph configuration
branch:
  main_branches: [main, master]
  auto_detect: true   # tag new nodes with the current git branch

patches:
  # directory: .reasongraph/patches
  # author: your-name

trace:
  grace_window: link  # link | unlinked
  preview_chars: 500
"""


def find_db_path(cwd: Path | None = None) -> Path:
    """Locate the database.

    ``REASONGRAPH_DB_PATH`` wins; otherwise walk up from ``cwd`` looking for
    a ``.reasongraph`` directory; otherwise default to one under ``cwd``.
    """
    if env_path := os.environ.get(ENV_DB_PATH):
        return Path(env_path)

    cwd = cwd or Path.cwd()
    for parent in [cwd, *cwd.parents]:
        data_dir = parent / DATA_DIR_NAME
        if data_dir.is_dir():
            return data_dir / DB_FILE_NAME

    return cwd / DATA_DIR_NAME / DB_FILE_NAME


def load_config(data_dir: Path) -> Config:
    """Load ``config.yaml`` from the data directory, falling back to defaults."""
    path = data_dir / CONFIG_FILE_NAME
    if not path.exists():
        return Config()
    try:
        raw = yaml.safe_load(path.read_text()) or {}
    except (yaml.YAMLError, OSError) as e:
        logger.warning(f"Ignoring unreadable {path}: {e}")
        return Config()
    if not isinstance(raw, dict):
        logger.warning(f"Ignoring {path}: expected a mapping")
        return Config()
    # Sections left empty in YAML come back as None
    raw = {k: v for k, v in raw.items() if v is not None}
    try:
        return Config.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Ignoring invalid {path}: {e}")
        return Config()


def write_default_config(data_dir: Path) -> Path:
    path = data_dir / CONFIG_FILE_NAME
    if not path.exists():
        path.write_text(DEFAULT_CONFIG_YAML)
    return path
