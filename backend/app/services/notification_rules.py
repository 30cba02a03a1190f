"""Which audited actions raise a notification, and for whom by default."""
from dataclasses import dataclass
from typing import Iterator, Mapping, Optional

from app.models.notification import Severity

ADMIN = "ADMIN"
ADMINLABO = "ADMINLABO"
TEACHER = "TEACHER"
LABORANTIN = "LABORANTIN"
STUDENT = "STUDENT"

PREFERENCE_ROLES = (ADMIN, ADMINLABO, TEACHER, LABORANTIN, STUDENT)


@dataclass(frozen=True)
class NotificationRule:
    severity: Severity
    target_roles: tuple[str, ...]
    title: str


DEFAULT_RULES: dict[tuple[str, str], NotificationRule] = {
    ("USERS", "CREATE"): NotificationRule(Severity.medium, (ADMIN,), "New user account"),
    ("USERS", "UPDATE"): NotificationRule(Severity.low, (ADMIN,), "User account updated"),
    ("USERS", "DELETE"): NotificationRule(Severity.high, (ADMIN,), "User account deleted"),
    ("CHEMICALS", "CREATE"): NotificationRule(Severity.medium, (ADMINLABO, LABORANTIN), "Chemical added"),
    ("CHEMICALS", "UPDATE"): NotificationRule(Severity.low, (ADMINLABO,), "Chemical updated"),
    ("CHEMICALS", "DELETE"): NotificationRule(Severity.high, (ADMIN, ADMINLABO), "Chemical removed"),
    ("EQUIPMENT", "CREATE"): NotificationRule(Severity.medium, (ADMIN, ADMINLABO), "Equipment added"),
    ("EQUIPMENT", "UPDATE"): NotificationRule(Severity.low, (ADMINLABO,), "Equipment updated"),
    ("EQUIPMENT", "DELETE"): NotificationRule(Severity.high, (ADMIN, ADMINLABO), "Equipment removed"),
    ("ROOMS", "CREATE"): NotificationRule(Severity.medium, (ADMIN, ADMINLABO), "Room added"),
    ("ROOMS", "UPDATE"): NotificationRule(Severity.low, (ADMIN, ADMINLABO), "Room updated"),
    ("ROOMS", "DELETE"): NotificationRule(Severity.high, (ADMIN,), "Room removed"),
    ("CALENDAR", "CREATE"): NotificationRule(Severity.low, (ADMIN, TEACHER), "Event scheduled"),
    ("CALENDAR", "UPDATE"): NotificationRule(Severity.medium, (ADMIN, TEACHER), "Event modified"),
    ("CALENDAR", "DELETE"): NotificationRule(Severity.medium, (ADMIN, TEACHER), "Event cancelled"),
    ("CALENDAR", "STATE_CHANGE"): NotificationRule(Severity.high, (ADMIN, ADMINLABO), "Event status changed"),
    ("ORDERS", "CREATE"): NotificationRule(Severity.medium, (ADMIN, ADMINLABO), "New order"),
    ("ORDERS", "STATE_CHANGE"): NotificationRule(Severity.medium, (ADMIN, ADMINLABO), "Order status changed"),
    ("SECURITY", "UPDATE"): NotificationRule(Severity.high, (ADMIN,), "Security settings changed"),
    ("SYSTEM", "IMPORT"): NotificationRule(Severity.low, (ADMIN,), "Data imported"),
    ("SYSTEM", "EXPORT"): NotificationRule(Severity.low, (ADMIN,), "Data exported"),
}

_VERBS = {
    "CREATE": "created",
    "READ": "viewed",
    "UPDATE": "updated",
    "DELETE": "deleted",
    "LOGIN": "logged in to",
    "LOGOUT": "logged out of",
    "EXPORT": "exported",
    "IMPORT": "imported",
    "STATE_CHANGE": "changed the state of",
}


class NotificationRules:
    """Lookup of (module, actionType) -> NotificationRule; defaults to DEFAULT_RULES."""

    def __init__(self, rules: Optional[Mapping[tuple[str, str], NotificationRule]] = None):
        self._rules = dict(DEFAULT_RULES if rules is None else rules)

    def match(self, module: str, action_type: str) -> Optional[NotificationRule]:
        return self._rules.get((module, action_type))

    def __iter__(self) -> Iterator[tuple[tuple[str, str], NotificationRule]]:
        return iter(self._rules.items())

    def __len__(self) -> int:
        return len(self._rules)


def describe_action(actor_name: Optional[str], action_type: str, entity: str, entity_id: Optional[str]) -> str:
    """Human-readable one-liner, e.g. ``Alice created chemical #42``."""
    verb = _VERBS.get(action_type, action_type.lower())
    target = f"{entity} #{entity_id}" if entity_id else entity
    return f"{actor_name or 'Someone'} {verb} {target}"


def default_preference(role: str, module: str) -> bool:
    """Baseline enabled flag used when seeding the preference matrix."""
    if role == ADMIN:
        return True
    if role in (ADMINLABO, LABORANTIN):
        return module != "USERS"
    if role == TEACHER:
        return module in ("CHEMICALS", "EQUIPMENT", "CALENDAR", "ROOMS")
    if role == STUDENT:
        return module == "SYSTEM"
    return False
