"""In-memory event store, repository and notifier used by the alert engine."""

from __future__ import annotations

import copy
import fnmatch
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from opsmonitor.config import AlarmConfig
from opsmonitor.models import (
    FIRING_ALERT_CACHE_PREFIX,
    PENDING_ALERT_CACHE_PREFIX,
    SILENCE_CACHE_PREFIX,
    AlertCurEvent,
    AlertHisEvent,
    AlertNotice,
    AlertRule,
    AlertSubscribe,
    ProbingEvent,
    ProbingRule,
)

FIRING = "Firing"
PENDING = "Pending"


class EventStore:
    """Key/value cache of current events, silences and probing results."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._events: dict[str, AlertCurEvent] = {}
        self._silences: dict[str, float] = {}
        self._probing: dict[str, ProbingEvent] = {}
        self._probing_values: dict[str, dict[str, Any]] = {}

    def _now(self) -> int:
        return int(self._clock())

    def set_event(self, status: str, event: AlertCurEvent) -> None:
        if status == FIRING:
            key = event.firing_cache_key()
        elif status == PENDING:
            key = event.pending_cache_key()
        else:
            raise ValueError(f"unknown event status: {status!r}")
        with self._lock:
            self._events[key] = copy.deepcopy(event)

    def get_event(self, key: str) -> AlertCurEvent | None:
        with self._lock:
            event = self._events.get(key)
            return copy.deepcopy(event) if event is not None else None

    def delete_event(self, key: str) -> None:
        with self._lock:
            self._events.pop(key, None)

    def first_trigger_time(self, key: str) -> int:
        """First trigger time of the stored event, or now when there is none."""
        event = self.get_event(key)
        if event is not None and event.first_trigger_time:
            return event.first_trigger_time
        return self._now()

    def last_eval_time(self, key: str) -> int:
        return self._now()

    def last_send_time(self, key: str) -> int:
        event = self.get_event(key)
        return event.last_send_time if event is not None else 0

    def scan(self, pattern: str) -> list[str]:
        with self._lock:
            return [k for k in self._events if fnmatch.fnmatchcase(k, pattern)]

    def rule_keys(
        self, status: str, tenant_id: str, rule_id: str, datasource_ids: list[str]
    ) -> list[str]:
        prefix_name = {FIRING: FIRING_ALERT_CACHE_PREFIX, PENDING: PENDING_ALERT_CACHE_PREFIX}.get(status)
        if prefix_name is None:
            raise ValueError(f"unknown event status: {status!r}")
        prefixes = tuple(f"{tenant_id}:{prefix_name}{rule_id}-{ds}-" for ds in datasource_ids)
        with self._lock:
            return [k for k in self._events if k.startswith(prefixes)] if prefixes else []

    def _silence_key(self, tenant_id: str, fingerprint: str) -> str:
        return f"{tenant_id}:{SILENCE_CACHE_PREFIX}{fingerprint}"

    def set_silence(self, tenant_id: str, fingerprint: str, ttl: float) -> None:
        with self._lock:
            self._silences[self._silence_key(tenant_id, fingerprint)] = self._clock() + ttl

    def is_silenced(self, tenant_id: str, fingerprint: str) -> bool:
        return self.silence_ttl(tenant_id, fingerprint) > 0

    def silence_ttl(self, tenant_id: str, fingerprint: str) -> float:
        """Seconds left on a silence; -2 when missing or expired."""
        with self._lock:
            deadline = self._silences.get(self._silence_key(tenant_id, fingerprint))
            if deadline is None:
                return -2
            remaining = deadline - self._clock()
            return remaining if remaining > 0 else -2

    def set_probing_event(self, event: ProbingEvent) -> None:
        with self._lock:
            self._probing[event.firing_cache_key()] = copy.deepcopy(event)

    def get_probing_event(self, key: str) -> ProbingEvent | None:
        with self._lock:
            event = self._probing.get(key)
            return copy.deepcopy(event) if event is not None else None

    def delete_probing_event(self, key: str) -> None:
        with self._lock:
            self._probing.pop(key, None)

    def set_probing_values(self, key: str, values: dict[str, Any]) -> None:
        with self._lock:
            self._probing_values.setdefault(key, {}).update(values)

    def get_probing_values(self, key: str) -> dict[str, Any]:
        with self._lock:
            return dict(self._probing_values.get(key, {}))


class Repository:
    """Persistent records: rules, notices, duty rosters, history and subscriptions."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._rules: dict[str, AlertRule] = {}
        self._notices: dict[tuple[str, str], AlertNotice] = {}
        self._duty: dict[tuple[str, str], str] = {}
        self._history: list[AlertHisEvent] = []
        self._subscribes: list[AlertSubscribe] = []
        self._expired_silences: set[str] = set()
        self._probing_rules: dict[str, ProbingRule] = {}

    def add_rule(self, rule: AlertRule) -> None:
        with self._lock:
            self._rules[rule.rule_id] = rule

    def get_rule(self, rule_id: str) -> AlertRule | None:
        with self._lock:
            return self._rules.get(rule_id)

    def rule_exists(self, rule_id: str) -> bool:
        with self._lock:
            return rule_id in self._rules

    def enabled_rules(self) -> list[AlertRule]:
        with self._lock:
            return [r for r in self._rules.values() if r.enabled]

    def add_notice(self, notice: AlertNotice) -> None:
        with self._lock:
            self._notices[(notice.tenant_id, notice.uuid)] = notice

    def get_notice(self, tenant_id: str, notice_id: str) -> AlertNotice | None:
        with self._lock:
            return self._notices.get((tenant_id, notice_id))

    def set_duty_user(self, duty_id: str, day: str, user_id: str) -> None:
        with self._lock:
            self._duty[(duty_id, day)] = user_id

    def duty_user(self, duty_id: str, day: str) -> str:
        with self._lock:
            return self._duty.get((duty_id, day), "")

    def add_history(self, event: AlertHisEvent) -> None:
        with self._lock:
            self._history.append(event)

    def history(self) -> list[AlertHisEvent]:
        with self._lock:
            return list(self._history)

    def add_subscribe(self, subscribe: AlertSubscribe) -> None:
        with self._lock:
            self._subscribes.append(subscribe)

    def list_subscribes(self, tenant_id: str, query: str = "") -> list[AlertSubscribe]:
        with self._lock:
            return [
                s
                for s in self._subscribes
                if s.tenant_id == tenant_id and (not query or query in s.rule_id)
            ]

    def mark_silence_expired(self, fingerprint: str) -> bool:
        """Mark a silence as expired; True if it was not already marked."""
        with self._lock:
            if fingerprint in self._expired_silences:
                return False
            self._expired_silences.add(fingerprint)
            return True

    def add_probing_rule(self, rule: ProbingRule) -> None:
        with self._lock:
            self._probing_rules[rule.rule_id] = rule

    def enabled_probing_rules(self) -> list[ProbingRule]:
        with self._lock:
            return [r for r in self._probing_rules.values() if r.enabled]


@dataclass
class SendParams:
    tenant_id: str = ""
    rule_name: str = ""
    severity: str = ""
    notice_type: str = ""
    notice_id: str = ""
    notice_name: str = ""
    is_recovered: bool = False
    hook: str = ""
    email: list[str] = field(default_factory=list)
    content: str = ""


class Notifier(Protocol):
    def send(self, params: SendParams) -> None: ...


class CollectingNotifier:
    """Notifier that keeps every message it is given."""

    def __init__(self) -> None:
        self.sent: list[SendParams] = []

    def send(self, params: SendParams) -> None:
        self.sent.append(params)


@dataclass
class Runtime:
    store: EventStore = field(default_factory=EventStore)
    repository: Repository = field(default_factory=Repository)
    notifier: Notifier = field(default_factory=CollectingNotifier)
    alarm: AlarmConfig = field(default_factory=AlarmConfig)
    lock: threading.RLock = field(default_factory=threading.RLock)