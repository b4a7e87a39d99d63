from __future__ import annotations

from contextlib import contextmanager
from importlib import resources
from pathlib import Path
from typing import Iterator, Optional

from alembic import command as alembic_command
from alembic.config import Config as AlembicConfig
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
import sqlalchemy as sa

SCRIPTS_PACKAGE = "deploy_audit.db_migration_scripts"


def database_url(db_path: Path) -> str:
    return f"sqlite:///{db_path}"


@contextmanager
def alembic_config(db_path: Optional[Path] = None) -> Iterator[AlembicConfig]:
    """Alembic config pointing at the migration scripts shipped in the package."""
    with resources.as_file(resources.files(SCRIPTS_PACKAGE)) as scripts:
        cfg = AlembicConfig()
        cfg.set_main_option("script_location", str(scripts))
        if db_path is not None:
            cfg.set_main_option("sqlalchemy.url", database_url(db_path))
        yield cfg


def current_revision(path: str | Path) -> Optional[str]:
    """Revision stamped in the database, None for an unmigrated file."""
    db_path = Path(path)
    if not db_path.exists():
        return None
    engine = sa.create_engine(database_url(db_path))
    try:
        with engine.connect() as conn:
            return MigrationContext.configure(conn).get_current_revision()
    finally:
        engine.dispose()


def head_revision() -> str:
    with alembic_config() as cfg:
        return ScriptDirectory.from_config(cfg).get_current_head()


def migrate_db(path: str | Path, revision: str = "head") -> Optional[str]:
    """Upgrade the database at ``path`` and return the revision it ends up at."""
    db_path = Path(path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with alembic_config(db_path) as cfg:
        alembic_command.upgrade(cfg, revision)
    return current_revision(db_path)
