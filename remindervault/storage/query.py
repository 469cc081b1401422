"""Shared query utilities used by every storage tier.

Filters are compiled into composable conditions and evaluated in memory,
so a tier only has to produce a candidate list (whole owner, or an index
scan when it has one) and hand it to ``apply_filters``. Sorting,
pagination and statistics live here too, keeping results identical
across tiers.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Union

import msgspec

from ..core.models import Category, Reminder, Status, ValidationIssue, as_utc, utcnow
from ..exceptions import ValidationError


class Operator(Enum):
    """Query operators."""

    EQ = "="
    NE = "!="
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    CONTAINS = "contains"
    IN = "in"

    AND = "and"
    OR = "or"
    NOT = "not"


def _plain(value: Any) -> Any:
    """Unwrap enum members so they compare against raw values."""
    return value.value if isinstance(value, Enum) else value


@dataclass
class Condition:
    """A single condition on a reminder field."""

    field: str
    operator: Operator
    value: Any

    def matches(self, reminder: Reminder) -> bool:
        """Check if a reminder satisfies this condition."""
        field_value = _plain(getattr(reminder, self.field, None))
        value = _plain(self.value)

        if field_value is None:
            return self.operator == Operator.EQ and value is None

        try:
            if self.operator == Operator.EQ:
                return field_value == value
            elif self.operator == Operator.NE:
                return field_value != value
            elif self.operator == Operator.GT:
                return field_value > value
            elif self.operator == Operator.GTE:
                return field_value >= value
            elif self.operator == Operator.LT:
                return field_value < value
            elif self.operator == Operator.LTE:
                return field_value <= value
            elif self.operator == Operator.CONTAINS:
                return str(value).lower() in str(field_value).lower()
            elif self.operator == Operator.IN:
                return field_value in {_plain(v) for v in value}
        except TypeError:
            return False

        return False


@dataclass
class Query:
    """Conditions combined with a logical operator."""

    conditions: list[Union[Condition, "Query"]]
    operator: Operator = Operator.AND

    def matches(self, reminder: Reminder) -> bool:
        """Check if a reminder matches this query."""
        if not self.conditions:
            return True

        if self.operator == Operator.AND:
            return all(c.matches(reminder) for c in self.conditions)
        elif self.operator == Operator.OR:
            return any(c.matches(reminder) for c in self.conditions)
        elif self.operator == Operator.NOT:
            return not all(c.matches(reminder) for c in self.conditions)

        return False

    def add(self, condition: Union[Condition, "Query"]) -> "Query":
        """Add a condition to this query."""
        self.conditions.append(condition)
        return self


class QueryBuilder:
    """Fluent interface for building reminder queries."""

    def __init__(self):
        self.query = Query(conditions=[])

    def where(self, field: str, operator: str | Operator, value: Any) -> "QueryBuilder":
        """Add a where condition."""
        if isinstance(operator, str):
            operator = Operator(operator)

        self.query.add(Condition(field, operator, value))
        return self

    def where_status(self, status: Status | str) -> "QueryBuilder":
        return self.where("status", Operator.EQ, status)

    def where_category(self, category: Category | str) -> "QueryBuilder":
        return self.where("category", Operator.EQ, category)

    def where_priority(self, priority: int) -> "QueryBuilder":
        return self.where("priority", Operator.EQ, priority)

    def where_due_between(
        self, start: datetime | None, end: datetime | None
    ) -> "QueryBuilder":
        """Filter by an inclusive due-date range; either bound may be open."""
        if start is not None:
            self.where("due", Operator.GTE, as_utc(start))
        if end is not None:
            self.where("due", Operator.LTE, as_utc(end))
        return self

    def where_text(self, text: str) -> "QueryBuilder":
        """Case-insensitive search over title and description."""
        self.query.add(
            Query(
                conditions=[
                    Condition("title", Operator.CONTAINS, text),
                    Condition("description", Operator.CONTAINS, text),
                ],
                operator=Operator.OR,
            )
        )
        return self

    def build(self) -> Query:
        """Build the final query."""
        return self.query


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

SORT_KEYS = {
    "due": lambda r: as_utc(r.due),
    "priority": lambda r: r.priority,
    "title": lambda r: (r.title or "").lower(),
    "created": lambda r: r.created_at or _EPOCH,
    "updated": lambda r: r.updated_at or _EPOCH,
    "category": lambda r: _plain(r.category),
    "status": lambda r: _plain(r.status),
    "alerts": lambda r: len(r.alert_offsets),
}

SORT_DIRECTIONS = ("asc", "desc")

# Accepted spellings for filter keys coming from outer layers
_FILTER_ALIASES = {
    "dir": "sort_direction",
    "direction": "sort_direction",
    "sortBy": "sort_by",
    "sortDirection": "sort_direction",
    "dateFrom": "date_from",
    "dateTo": "date_to",
}


class ReminderFilter(
    msgspec.Struct, frozen=True, kw_only=True, forbid_unknown_fields=True
):
    """Filter, sort and pagination options for listing reminders."""

    status: Status | None = None
    category: Category | None = None
    priority: int | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    search: str | None = None
    sort_by: str | None = None
    sort_direction: str = "asc"
    limit: int | None = None
    offset: int = 0

    @classmethod
    def from_value(
        cls, filters: "ReminderFilter | Mapping[str, Any] | None"
    ) -> "ReminderFilter":
        """Coerce None, a mapping or a filter into a validated filter."""
        if filters is None:
            return cls()
        if isinstance(filters, ReminderFilter):
            filters.check()
            return filters
        if not isinstance(filters, Mapping):
            raise ValidationError([ValidationIssue("filters", "Filters must be a mapping")])

        data = {
            _FILTER_ALIASES.get(key, key): _plain(value)
            for key, value in filters.items()
            if value is not None and value != ""
        }
        try:
            result = msgspec.convert(data, cls, strict=False)
        except msgspec.ValidationError as e:
            raise ValidationError([ValidationIssue("filters", str(e))]) from e
        result.check()
        return result

    def check(self) -> None:
        """Validate option values that the type system cannot express."""
        issues = []
        if self.sort_by is not None and self.sort_by not in SORT_KEYS:
            issues.append(ValidationIssue("sort_by", f"Unknown sort key: {self.sort_by}"))
        if self.sort_direction not in SORT_DIRECTIONS:
            issues.append(
                ValidationIssue("sort_direction", "Sort direction must be asc or desc")
            )
        if self.priority is not None and not 1 <= self.priority <= 4:
            issues.append(ValidationIssue("priority", "Priority must be between 1 and 4"))
        if self.limit is not None and self.limit < 0:
            issues.append(ValidationIssue("limit", "Limit must not be negative"))
        if self.offset < 0:
            issues.append(ValidationIssue("offset", "Offset must not be negative"))
        if issues:
            raise ValidationError(issues)

    def to_query(self) -> Query:
        """Compile the filter fields into a query."""
        builder = QueryBuilder()
        if self.status is not None:
            builder.where_status(self.status)
        if self.category is not None:
            builder.where_category(self.category)
        if self.priority is not None:
            builder.where_priority(self.priority)
        if self.date_from is not None or self.date_to is not None:
            builder.where_due_between(self.date_from, self.date_to)
        if self.search:
            builder.where_text(self.search)
        return builder.build()


def search_reminders(reminders: Iterable[Reminder], query: Query) -> list[Reminder]:
    """Return reminders matching a query."""
    return [r for r in reminders if query.matches(r)]


def sort_reminders(
    reminders: Iterable[Reminder], sort_by: str = "due", direction: str = "asc"
) -> list[Reminder]:
    """Stable sort by one of SORT_KEYS; ``desc`` reverses the order.

    Raises:
        ValidationError: for an unknown sort key.
    """
    if sort_by not in SORT_KEYS:
        raise ValidationError([ValidationIssue("sort_by", f"Unknown sort key: {sort_by}")])
    key = SORT_KEYS[sort_by]
    return sorted(reminders, key=key, reverse=direction == "desc")


def paginate(
    reminders: list[Reminder], limit: int | None = None, offset: int = 0
) -> list[Reminder]:
    """Slice a result list."""
    if offset:
        reminders = reminders[offset:]
    if limit is not None:
        reminders = reminders[:limit]
    return reminders


def apply_filters(
    reminders: Iterable[Reminder],
    filters: ReminderFilter | Mapping[str, Any] | None = None,
) -> list[Reminder]:
    """Filter, sort and paginate reminders according to ``filters``."""
    criteria = ReminderFilter.from_value(filters)
    result = search_reminders(reminders, criteria.to_query())
    if criteria.sort_by:
        result = sort_reminders(result, criteria.sort_by, criteria.sort_direction)
    return paginate(result, criteria.limit, criteria.offset)


class ReminderStatistics(msgspec.Struct, kw_only=True, rename="camel"):
    """Aggregate counts over one owner's reminders."""

    total: int = 0
    active: int = 0
    completed: int = 0
    overdue: int = 0
    cancelled: int = 0
    snoozed: int = 0
    completed_today: int = 0
    category_counts: dict[str, int] = msgspec.field(default_factory=dict)
    priority_counts: dict[int, int] = msgspec.field(
        default_factory=lambda: {1: 0, 2: 0, 3: 0, 4: 0}
    )
    total_configured_alerts: int = 0
    average_alerts_per_reminder: float = 0.0
    tier_name: str | None = None


def calculate_statistics(
    reminders: list[Reminder], now: datetime | None = None
) -> ReminderStatistics:
    """Aggregate status, category, priority and alert counts."""
    now = now or utcnow()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    tomorrow = today + timedelta(days=1)

    stats = ReminderStatistics(total=len(reminders))
    for reminder in reminders:
        status = Status(reminder.status)
        setattr(stats, status.value, getattr(stats, status.value) + 1)

        if status == Status.COMPLETED:
            finished = reminder.completed_at or reminder.updated_at
            if finished is not None and today <= as_utc(finished) < tomorrow:
                stats.completed_today += 1

        category = _plain(reminder.category) or Category.OTHER.value
        stats.category_counts[category] = stats.category_counts.get(category, 0) + 1

        priority = reminder.priority or 2
        stats.priority_counts[priority] = stats.priority_counts.get(priority, 0) + 1

        stats.total_configured_alerts += len(reminder.alert_offsets)

    if reminders:
        stats.average_alerts_per_reminder = round(
            stats.total_configured_alerts / len(reminders), 1
        )

    return stats
