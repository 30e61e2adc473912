"""Thread records, registry line layouts, and port derivation schemes."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from iso_threads.errors import CorruptRegistry

FIELD_SEPARATOR = "|"
STATUS_INITIALIZING = "initializing"
STATUS_READY = "ready"
STATUS_ACTIVE = "active"
THREAD_STATUSES = {STATUS_INITIALIZING, STATUS_READY, STATUS_ACTIVE}
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class SchemaVersion(str, Enum):
    """On-disk layouts, identified by the number of fields per line."""

    LEGACY = "legacy"
    LEGACY_WIDE = "legacy_wide"
    CURRENT = "current"

    @property
    def field_count(self) -> int:
        return _FIELD_COUNTS[self]

    @property
    def is_legacy(self) -> bool:
        return self is not SchemaVersion.CURRENT

    @classmethod
    def from_field_count(cls, count: int, line_number: int | None = None) -> "SchemaVersion":
        for version, expected in _FIELD_COUNTS.items():
            if expected == count:
                return version
        raise CorruptRegistry(
            f"Unknown registry format (expected 7, 9 or 10 fields, got {count})",
            line_number=line_number,
        )


_FIELD_COUNTS = {
    SchemaVersion.LEGACY: 9,
    SchemaVersion.LEGACY_WIDE: 10,
    SchemaVersion.CURRENT: 7,
}


def utc_timestamp(now: datetime | None = None) -> str:
    return (now or datetime.now(timezone.utc)).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime | None:
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


class ThreadRecord(BaseModel):
    """One live thread.

    Legacy rows keep their original port block in ``legacy_ports`` (db, cache, app,
    debug and, for the wide layout, frontend); ``backend_port`` then mirrors the app
    port and ``frontend_port`` the frontend port (or the debug port when absent).
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: int = Field(ge=1)
    branch: str = Field(min_length=1)
    backend_port: int = Field(ge=1, le=65535)
    frontend_port: int = Field(ge=1, le=65535)
    worktree_path: str = Field(min_length=1)
    created_at: str = Field(min_length=1)
    status: str = Field(min_length=1)
    legacy_ports: tuple[int, ...] = ()

    @field_validator("branch", "worktree_path", "created_at", "status")
    @classmethod
    def _no_separator(cls, value: str) -> str:
        if FIELD_SEPARATOR in value or "\n" in value:
            raise ValueError("registry fields cannot contain '|' or newlines")
        return value

    @field_validator("legacy_ports")
    @classmethod
    def _legacy_shape(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        if value and len(value) not in (4, 5):
            raise ValueError("legacy_ports holds 4 or 5 ports")
        return value

    @property
    def schema_version(self) -> SchemaVersion:
        if not self.legacy_ports:
            return SchemaVersion.CURRENT
        return SchemaVersion.LEGACY_WIDE if len(self.legacy_ports) == 5 else SchemaVersion.LEGACY

    def ports(self) -> tuple[int, ...]:
        """Every host port this record occupies."""

        return PortAssignment(
            backend_port=self.backend_port,
            frontend_port=self.frontend_port,
            legacy_ports=self.legacy_ports,
        ).all_ports()

    def with_status(self, status: str) -> "ThreadRecord":
        return self.model_copy(update={"status": status})


@dataclass(frozen=True)
class PortAssignment:
    backend_port: int
    frontend_port: int
    legacy_ports: tuple[int, ...] = ()

    def all_ports(self) -> tuple[int, ...]:
        ordered: list[int] = []
        for port in (*self.legacy_ports, self.backend_port, self.frontend_port):
            if port not in ordered:
                ordered.append(port)
        return tuple(ordered)


@dataclass(frozen=True)
class CurrentPortScheme:
    backend_base: int
    frontend_base: int

    def derive(self, thread_id: int) -> PortAssignment:
        return PortAssignment(
            backend_port=self.backend_base + thread_id,
            frontend_port=self.frontend_base + thread_id,
        )


@dataclass(frozen=True)
class LegacyPortScheme:
    """Sequential ports at ``base + id * block``: db, cache, app, debug (+ frontend when wide)."""

    base: int
    block: int
    wide: bool = False

    def derive(self, thread_id: int) -> PortAssignment:
        start = self.base + thread_id * self.block
        ports = tuple(start + offset for offset in range(5 if self.wide else 4))
        return PortAssignment(
            backend_port=ports[2],
            frontend_port=ports[-1],
            legacy_ports=ports,
        )


def parse_line(line: str, line_number: int | None = None) -> ThreadRecord:
    fields = line.rstrip("\r\n").split(FIELD_SEPARATOR)
    version = SchemaVersion.from_field_count(len(fields), line_number=line_number)
    try:
        if version is SchemaVersion.CURRENT:
            tid, branch, backend, frontend, path, created, status = fields
            return ThreadRecord(
                id=int(tid),
                branch=branch,
                backend_port=int(backend),
                frontend_port=int(frontend),
                worktree_path=path,
                created_at=created,
                status=status,
            )
        if version is SchemaVersion.LEGACY_WIDE:
            tid, branch, db, cache, app, debug, frontend, path, created, status = fields
            legacy = (int(db), int(cache), int(app), int(debug), int(frontend))
        else:
            tid, branch, db, cache, app, debug, path, created, status = fields
            legacy = (int(db), int(cache), int(app), int(debug))
        return ThreadRecord(
            id=int(tid),
            branch=branch,
            backend_port=legacy[2],
            frontend_port=legacy[4] if len(legacy) == 5 else legacy[3],
            worktree_path=path,
            created_at=created,
            status=status,
            legacy_ports=legacy,
        )
    except (ValueError, ValidationError) as exc:
        raise CorruptRegistry(f"Malformed registry record: {exc}", line_number=line_number) from exc


def format_line(record: ThreadRecord) -> str:
    if record.schema_version is SchemaVersion.CURRENT:
        fields = [
            record.id,
            record.branch,
            record.backend_port,
            record.frontend_port,
            record.worktree_path,
            record.created_at,
            record.status,
        ]
    else:
        fields = [
            record.id,
            record.branch,
            *record.legacy_ports,
            record.worktree_path,
            record.created_at,
            record.status,
        ]
    return FIELD_SEPARATOR.join(str(value) for value in fields)


def detect_schema_version(records: list[ThreadRecord]) -> SchemaVersion | None:
    """Layout shared by all records, ``None`` for an empty table."""

    versions = {record.schema_version for record in records}
    if not versions:
        return None
    if len(versions) > 1:
        raise CorruptRegistry(
            "Registry mixes layouts: " + ", ".join(sorted(v.value for v in versions))
        )
    return versions.pop()


def parse_table(text: str) -> list[ThreadRecord]:
    records: list[ThreadRecord] = []
    seen_ids: set[int] = set()
    for number, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        record = parse_line(line, line_number=number)
        if record.id in seen_ids:
            raise CorruptRegistry(f"Duplicate thread id {record.id}", line_number=number)
        seen_ids.add(record.id)
        records.append(record)
    detect_schema_version(records)
    return records


def format_table(records: list[ThreadRecord]) -> str:
    detect_schema_version(records)
    return "".join(format_line(record) + "\n" for record in records)
