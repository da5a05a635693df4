"""
Migration discovery: file loading, header directives and dependency ordering.

A migration is either a ``.sql`` script or a ``.py`` module exposing
``async def upgrade(conn)``. Its name (used as ``schema_migrations.migration_name``)
is the file name without extension and without the ``.manual`` tag.

SQL directives live in the leading comment block::

    -- depends: 20260201_add_bill_version_column, 20260205_rental_agreement_org_id
    -- manual: true
    -- description: Drop the legacy task tables

Python modules use ``DEPENDS_ON``, ``MANUAL`` and ``DESCRIPTION``.

Manual-only migrations (destructive, run after a backup) are never part of
the automatic plan; see ``automatic_plan``.
"""

import heapq
import importlib.util
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Dict, Iterable, List, Optional, Tuple

import structlog

logger = structlog.get_logger()

MIGRATION_SUFFIXES = (".sql", ".py")
MANUAL_TAG = ".manual"
MANUAL_PREFIXES = ("drop_", "drop-")
TRUE_VALUES = {"1", "true", "yes", "on"}

_DIRECTIVE_RE = re.compile(r"^--\s*(depends|manual|description)\s*:\s*(.*)$", re.IGNORECASE)
_DESTRUCTIVE_RE = re.compile(r"\bDROP\s+(TABLE|COLUMN)\b", re.IGNORECASE)
_ALTER_TABLE_RE = re.compile(r"\bALTER\s+TABLE\b[^;]*", re.IGNORECASE)
# Inside ALTER TABLE the COLUMN keyword is optional: "DROP legacy_ref" drops a column
_ALTER_DROP_RE = re.compile(
    r"\bDROP\s+(?!(?:CONSTRAINT|DEFAULT|NOT\s+NULL|IDENTITY|EXPRESSION|POLICY"
    r"|INDEX|TRIGGER|FUNCTION|VIEW|SEQUENCE|TYPE|SCHEMA)\b)"
    r"(?:IF\s+EXISTS\s+)?\"?[A-Za-z_][A-Za-z0-9_]*",
    re.IGNORECASE,
)
_LINE_COMMENT_RE = re.compile(r"--[^\n]*")
_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
_PY_COMMENT_RE = re.compile(r"^\s*#[^\n]*", re.MULTILINE)


class MigrationDiscoveryError(Exception):
    pass


class MissingDependencyError(MigrationDiscoveryError):
    def __init__(self, migration: str, dependency: str, reason: str = "is not defined"):
        self.migration = migration
        self.dependency = dependency
        super().__init__(f"{migration} depends on {dependency}, which {reason}")


class DependencyCycleError(MigrationDiscoveryError):
    def __init__(self, names: Iterable[str]):
        self.names = sorted(names)
        super().__init__(f"dependency cycle between: {', '.join(self.names)}")


class DestructiveMigrationError(MigrationDiscoveryError):
    def __init__(self, migration: str, statement: str):
        self.migration = migration
        super().__init__(
            f"{migration} contains '{statement}' but is not tagged manual-only; "
            f"rename it to *{MANUAL_TAG}.sql, add '-- manual: true' or set MANUAL = True"
        )


@dataclass
class Migration:
    name: str
    path: Path
    kind: str
    depends_on: Tuple[str, ...] = ()
    manual: bool = False
    description: Optional[str] = None
    _module: Optional[ModuleType] = field(default=None, repr=False, compare=False)

    def read_sql(self) -> str:
        return self.path.read_text(encoding="utf-8")

    def load_module(self) -> ModuleType:
        if self._module is None:
            self._module = _import_migration_module(self.name, self.path)
        return self._module


def migration_name(path: Path) -> str:
    name = path.name
    for suffix in MIGRATION_SUFFIXES:
        if name.endswith(suffix):
            name = name[: -len(suffix)]
            break
    if name.endswith(MANUAL_TAG):
        name = name[: -len(MANUAL_TAG)]
    return name


def is_manual_filename(path: Path) -> bool:
    return MANUAL_TAG + "." in path.name or path.name.lower().startswith(MANUAL_PREFIXES)


def _split_list(raw) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        raw = raw.split(",")
    return tuple(item.strip() for item in raw if item and item.strip())


def parse_sql_header(sql: str) -> Dict[str, str]:
    """Directives from the leading comment block; parsing stops at the first statement."""
    directives: Dict[str, str] = {}
    for line in sql.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if not stripped.startswith("--"):
            break
        match = _DIRECTIVE_RE.match(stripped)
        if match:
            directives[match.group(1).lower()] = match.group(2).strip()
    return directives


def find_destructive_statement(sql: str) -> Optional[str]:
    """The first DROP TABLE / DROP COLUMN in ``sql`` (comments ignored), normalised."""
    sql = _BLOCK_COMMENT_RE.sub("", _LINE_COMMENT_RE.sub("", sql))
    match = _DESTRUCTIVE_RE.search(sql)
    if match:
        return " ".join(match.group(0).split()).upper()
    for statement in _ALTER_TABLE_RE.finditer(sql):
        match = _ALTER_DROP_RE.search(statement.group(0))
        if match:
            return " ".join(match.group(0).split()).upper()
    return None


def _import_migration_module(name: str, path: Path) -> ModuleType:
    spec = importlib.util.spec_from_file_location(f"schemaops_migration_{name}", path)
    if spec is None or spec.loader is None:
        raise MigrationDiscoveryError(f"cannot import migration module {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    if not callable(getattr(module, "upgrade", None)):
        raise MigrationDiscoveryError(f"{path.name} does not define upgrade(conn)")
    return module


def load_migration(path: Path) -> Migration:
    name = migration_name(path)
    manual = is_manual_filename(path)

    if path.suffix == ".sql":
        sql = path.read_text(encoding="utf-8")
        directives = parse_sql_header(sql)
        manual = manual or directives.get("manual", "").lower() in TRUE_VALUES
        if not manual:
            statement = find_destructive_statement(sql)
            if statement:
                raise DestructiveMigrationError(name, statement)
        return Migration(
            name=name,
            path=path,
            kind="sql",
            depends_on=_split_list(directives.get("depends")),
            manual=manual,
            description=directives.get("description"),
        )

    module = _import_migration_module(name, path)
    description = getattr(module, "DESCRIPTION", None)
    if description is None and module.__doc__:
        description = module.__doc__.strip().splitlines()[0]
    manual = manual or bool(getattr(module, "MANUAL", False))
    if not manual:
        # SQL embedded in the module is held to the same rule as .sql files
        source = _PY_COMMENT_RE.sub("", path.read_text(encoding="utf-8"))
        statement = find_destructive_statement(source)
        if statement:
            raise DestructiveMigrationError(name, statement)
    return Migration(
        name=name,
        path=path,
        kind="python",
        depends_on=_split_list(getattr(module, "DEPENDS_ON", None)),
        manual=manual,
        description=description,
        _module=module,
    )


def order_migrations(migrations: List[Migration]) -> List[Migration]:
    """
    Topological order over declared dependencies, ties broken by name.

    Migrations that declare nothing therefore keep filename (date) order.
    """
    by_name: Dict[str, Migration] = {}
    for migration in migrations:
        if migration.name in by_name:
            raise MigrationDiscoveryError(
                f"duplicate migration name {migration.name} "
                f"({by_name[migration.name].path.name}, {migration.path.name})"
            )
        by_name[migration.name] = migration

    indegree = {name: 0 for name in by_name}
    dependents: Dict[str, List[str]] = {name: [] for name in by_name}
    for migration in migrations:
        for dependency in migration.depends_on:
            if dependency not in by_name:
                raise MissingDependencyError(migration.name, dependency)
            if by_name[dependency].manual and not migration.manual:
                raise MissingDependencyError(
                    migration.name, dependency, reason="is manual-only and never auto-applied"
                )
            indegree[migration.name] += 1
            dependents[dependency].append(migration.name)

    ready = [name for name, degree in indegree.items() if degree == 0]
    heapq.heapify(ready)
    ordered: List[Migration] = []
    while ready:
        name = heapq.heappop(ready)
        ordered.append(by_name[name])
        for dependent in dependents[name]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(ordered) != len(migrations):
        raise DependencyCycleError(name for name, degree in indegree.items() if degree > 0)
    return ordered


def discover_migrations(directory: Path) -> List[Migration]:
    """Every migration in ``directory`` (manual ones included), dependency-ordered."""
    directory = Path(directory)
    if not directory.is_dir():
        raise MigrationDiscoveryError(f"migrations directory not found: {directory}")

    migrations = [
        load_migration(path)
        for path in sorted(directory.iterdir())
        if path.is_file()
        and path.suffix in MIGRATION_SUFFIXES
        and not path.name.startswith(("_", "."))
    ]
    ordered = order_migrations(migrations)
    logger.debug(
        "migrations_discovered",
        directory=str(directory),
        total=len(ordered),
        manual=sum(1 for m in ordered if m.manual),
    )
    return ordered


def automatic_plan(migrations: List[Migration]) -> List[Migration]:
    """The migrations a runner may apply on its own: everything not manual-only."""
    return [m for m in migrations if not m.manual]
