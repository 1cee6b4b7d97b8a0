"""Composable filter predicates for extension version queries.

A ``ConditionSet`` is built once per operation and handed to every
statement of that operation (page query and count query alike), so the
filters cannot drift apart. Each condition renders itself to SQL for
``PostgresStore`` and evaluates itself against an ``ExtensionVersion`` for
``MemoryStore``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, List, Optional, Sequence, Tuple

from vsxregistry.storage.common import is_valid_target_platform, sql_upper
from vsxregistry.storage.models import ExtensionVersion


def _extension_attr(name: str) -> Callable[[ExtensionVersion], Any]:
    def getter(version: ExtensionVersion) -> Any:
        return getattr(version.extension, name, None) if version.extension else None

    return getter


def _namespace_attr(name: str) -> Callable[[ExtensionVersion], Any]:
    def getter(version: ExtensionVersion) -> Any:
        extension = version.extension
        if not extension or not extension.namespace:
            return None
        return getattr(extension.namespace, name, None)

    return getter


@dataclass(frozen=True)
class Column:
    """A schema column plus the accessor reading it from a hydrated version."""

    table: str
    name: str
    getter: Callable[[ExtensionVersion], Any]

    def sql(self) -> str:
        return f"{self.table}.{self.name}"

    def value(self, version: ExtensionVersion) -> Any:
        return self.getter(version)


EV_ID = Column("ev", "id", lambda v: v.id)
EV_EXTENSION_ID = Column("ev", "extension_id", _extension_attr("id"))
EV_VERSION = Column("ev", "version", lambda v: v.version)
EV_TARGET_PLATFORM = Column("ev", "target_platform", lambda v: v.target_platform)
EV_ACTIVE = Column("ev", "active", lambda v: v.active)
EV_PRE_RELEASE = Column("ev", "pre_release", lambda v: v.pre_release)
EXT_NAME = Column("e", "name", _extension_attr("name"))
EXT_PUBLIC_ID = Column("e", "public_id", _extension_attr("public_id"))
EXT_ACTIVE = Column("e", "active", _extension_attr("active"))
NS_NAME = Column("n", "name", _namespace_attr("name"))
NS_PUBLIC_ID = Column("n", "public_id", _namespace_attr("public_id"))


class Condition:
    def render(self) -> Tuple[str, List[Any]]:
        raise NotImplementedError

    def matches(self, version: ExtensionVersion) -> bool:
        raise NotImplementedError


@dataclass(frozen=True)
class Eq(Condition):
    column: Column
    value: Any

    def render(self) -> Tuple[str, List[Any]]:
        return f"{self.column.sql()} = %s", [self.value]

    def matches(self, version: ExtensionVersion) -> bool:
        return self.column.value(version) == self.value


@dataclass(frozen=True)
class EqIgnoreCase(Condition):
    column: Column
    value: str

    def render(self) -> Tuple[str, List[Any]]:
        return f"UPPER({self.column.sql()}) = UPPER(%s)", [self.value]

    def matches(self, version: ExtensionVersion) -> bool:
        actual = self.column.value(version)
        if actual is None or self.value is None:
            return False
        return sql_upper(str(actual)) == sql_upper(self.value)


@dataclass(frozen=True)
class IsTrue(Condition):
    column: Column

    def render(self) -> Tuple[str, List[Any]]:
        return f"{self.column.sql()} = TRUE", []

    def matches(self, version: ExtensionVersion) -> bool:
        return bool(self.column.value(version))


@dataclass(frozen=True)
class In(Condition):
    column: Column
    values: Tuple[Any, ...]

    def render(self) -> Tuple[str, List[Any]]:
        return f"{self.column.sql()} = ANY(%s)", [list(self.values)]

    def matches(self, version: ExtensionVersion) -> bool:
        return self.column.value(version) in self.values


class ConditionSet:
    """Ordered conjunction of conditions shared between related statements."""

    def __init__(self, conditions: Optional[Iterable[Condition]] = None) -> None:
        self._conditions: List[Condition] = list(conditions or [])

    def add(self, condition: Condition) -> "ConditionSet":
        self._conditions.append(condition)
        return self

    def extend(self, conditions: Iterable[Condition]) -> "ConditionSet":
        for condition in conditions:
            self.add(condition)
        return self

    def copy(self) -> "ConditionSet":
        return ConditionSet(self._conditions)

    def render(self) -> Tuple[str, List[Any]]:
        """Render as one AND-joined SQL expression with positional params."""
        if not self._conditions:
            return "TRUE", []
        clauses: List[str] = []
        params: List[Any] = []
        for condition in self._conditions:
            clause, clause_params = condition.render()
            clauses.append(clause)
            params.extend(clause_params)
        return " AND ".join(clauses), params

    def where(self) -> Tuple[str, List[Any]]:
        if not self._conditions:
            return "", []
        clause, params = self.render()
        return " WHERE " + clause, params

    def matches(self, version: ExtensionVersion) -> bool:
        return all(condition.matches(version) for condition in self._conditions)

    def filter(self, versions: Iterable[ExtensionVersion]) -> List[ExtensionVersion]:
        return [version for version in versions if self.matches(version)]

    def __iter__(self) -> Iterator[Condition]:
        return iter(self._conditions)

    def __len__(self) -> int:
        return len(self._conditions)

    def __repr__(self) -> str:
        return f"ConditionSet({self._conditions!r})"


def active_only() -> ConditionSet:
    return ConditionSet([IsTrue(EV_ACTIVE)])


def target_platform_filter(target_platform: Optional[str]) -> List[Condition]:
    if target_platform is None:
        return []
    return [Eq(EV_TARGET_PLATFORM, target_platform)]


def extension_ids_filter(extension_ids: Sequence[int]) -> Condition:
    return In(EV_EXTENSION_ID, tuple(extension_ids))


def latest_filter(
    target_platform: Optional[str], only_pre_release: bool, only_active: bool
) -> ConditionSet:
    """Filters of the "latest" family.

    Unlike the listing queries, an unknown platform name is ignored here
    rather than matching nothing.
    """
    conditions = ConditionSet()
    if is_valid_target_platform(target_platform):
        conditions.extend(target_platform_filter(target_platform))
    if only_pre_release:
        conditions.add(IsTrue(EV_PRE_RELEASE))
    if only_active:
        conditions.extend(active_only())
    return conditions
