from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory

ALEMBIC_INI = Path(__file__).resolve().parent.parent / "alembic.ini"


@dataclass(frozen=True)
class MigrationStatus:
    current: frozenset[str]
    expected: frozenset[str]
    # Revisions still to apply, oldest first
    pending: tuple[str, ...] = field(default=())

    @property
    def is_current(self) -> bool:
        return bool(self.current) and self.current == self.expected


def _script_directory() -> ScriptDirectory:
    if not ALEMBIC_INI.exists():
        raise RuntimeError(f"Alembic config not found at {ALEMBIC_INI}")
    return ScriptDirectory.from_config(Config(str(ALEMBIC_INI)))


def migration_status(engine) -> MigrationStatus:
    """Compare the HRIS schema revision stored in the database with the scripts on disk."""
    script = _script_directory()
    with engine.connect() as conn:
        current = frozenset(MigrationContext.configure(conn).get_current_heads() or ())

    pending: list[str] = []
    for revision in script.walk_revisions():
        if revision.revision in current:
            break
        pending.append(revision.revision)
    pending.reverse()
    return MigrationStatus(current=current, expected=frozenset(script.get_heads()), pending=tuple(pending))


def ensure_up_to_date(engine) -> MigrationStatus:
    """Raise ``RuntimeError`` unless the payroll schema is at the latest revision."""
    status = migration_status(engine)
    if not status.current:
        raise RuntimeError(
            "HRIS database has no schema revision. Run 'python -m scripts.manage migrate' before serving payroll."
        )
    if not status.is_current:
        raise RuntimeError(
            f"HRIS schema is at {sorted(status.current)}, expected {sorted(status.expected)}; "
            f"pending revisions: {', '.join(status.pending) or 'none'}. Run 'python -m scripts.manage migrate'."
        )
    return status
