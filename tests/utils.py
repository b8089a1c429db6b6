import importlib
import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

from services.shared.db import create_db, make_engine


def reload_module(module_name: str):
    """Import a module fresh so env overrides take effect."""
    if module_name in sys.modules:
        del sys.modules[module_name]
    return importlib.import_module(module_name)


def configure_sqlite_env(env_var: str, path: Path) -> str:
    """Ensure a unique sqlite db path for a service and store it in env."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        path.unlink()
    url = f"sqlite:///{path}"
    os.environ[env_var] = url
    return url


def sqlite_engine(path: Path):
    engine = make_engine(f"sqlite:///{path}")
    create_db(engine)
    return engine


class FixedClock:
    """Test clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, days: int = 0, hours: int = 0) -> datetime:
        self.now = self.now + timedelta(days=days, hours=hours)
        return self.now
