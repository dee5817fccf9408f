"""Endpoint probing: producers that run probes and consumers that notify."""

from __future__ import annotations

import hashlib
import logging
import re
import threading
import time
from typing import Any, Callable, Mapping

from opsmonitor.backends import Runtime, SendParams
from opsmonitor.conditions import EvalCondition, eval_condition
from opsmonitor.models import AlertCurEvent, AlertNotice, ProbingEvent, ProbingRule
from opsmonitor.process import duty_user

log = logging.getLogger(__name__)

ICMP = "ICMP"
HTTP = "HTTP"
TCP = "TCP"
SSL = "SSL"

Prober = Callable[[ProbingRule], Mapping[str, Any]]

_VARIABLE = re.compile(r"\$\{(\w+)\}")


def _render_variables(template: str, metric: Mapping[str, Any]) -> str:
    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        return str(metric[name]) if name in metric else match.group(0)

    return _VARIABLE.sub(replace, template)


def _labels(values: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in values.items() if isinstance(v, (str, int, float, bool))}


def _fingerprint(rule: ProbingRule) -> str:
    text = f"{rule.tenant_id}:{rule.rule_type}:{rule.probing_endpoint_config.endpoint}"
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def save_probing_event(runtime: Runtime, event: ProbingEvent) -> None:
    """Store a failing probe result, keeping its first trigger and last send times."""
    now = int(time.time())
    store = runtime.store
    existing = store.get_probing_event(event.firing_cache_key())
    if existing is not None and existing.first_trigger_time:
        event.first_trigger_time = existing.first_trigger_time
    else:
        event.first_trigger_time = now
    event.last_eval_time = now
    event.last_send_time = existing.last_send_time if existing is not None else 0
    store.set_probing_event(event)


def to_alert_event(event: ProbingEvent) -> AlertCurEvent:
    """View a probing event as an alert event for rendering."""
    return AlertCurEvent(
        tenant_id=event.tenant_id,
        rule_id=event.rule_id,
        fingerprint=event.fingerprint,
        severity=event.severity,
        metric=dict(event.metric),
        notice_id=event.notice_id,
        annotations=event.annotations,
        is_recovered=event.is_recovered,
        first_trigger_time=event.first_trigger_time,
        first_trigger_time_format=event.first_trigger_time_format,
        repeat_notice_interval=event.repeat_notice_interval,
        last_eval_time=event.last_eval_time,
        last_send_time=event.last_send_time,
        recover_time=event.recover_time,
        recover_time_format=event.recover_time_format,
        duty_user=event.duty_user,
        recover_notify=event.recover_notify,
    )


def _render(alert: AlertCurEvent, notice: AlertNotice) -> str:
    status = "recovered" if alert.is_recovered else "firing"
    lines = [
        f"rule: {alert.rule_id}",
        f"severity: {alert.severity}",
        f"status: {status}",
        f"annotations: {alert.annotations}",
    ]
    if alert.duty_user:
        lines.append(f"duty: {alert.duty_user}")
    if notice.notice_tmpl_id:
        lines.append(f"template: {notice.notice_tmpl_id}")
    return "\n".join(lines)


class ProbingProducer:
    """Runs the probe of each rule on its interval and records failures.

    ``probers`` maps a rule type to a callable returning the probe's values.
    ``timing`` counts consecutive failed evaluations per rule id.
    """

    def __init__(
        self,
        runtime: Runtime,
        probers: Mapping[str, Prober],
        tick: float = 1.0,
    ) -> None:
        self.runtime = runtime
        self.probers = dict(probers)
        self.tick = tick
        self.timing: dict[str, int] = {}
        self._lock = threading.RLock()
        self._watchers: dict[str, threading.Event] = {}

    def submit(self, rule: ProbingRule) -> None:
        """Start probing a rule, replacing any watcher already running for it."""
        stop = threading.Event()
        with self._lock:
            old = self._watchers.get(rule.rule_id)
            if old is not None:
                old.set()
            self._watchers[rule.rule_id] = stop
        threading.Thread(
            target=self._watch, args=(rule, stop), name=f"probe-{rule.rule_id}", daemon=True
        ).start()

    def stop(self, rule_id: str) -> None:
        with self._lock:
            stop = self._watchers.pop(rule_id, None)
        if stop is not None:
            stop.set()

    def _watch(self, rule: ProbingRule, stop: threading.Event) -> None:
        interval = max(rule.probing_endpoint_config.strategy.eval_interval, 0) * self.tick
        self.worker(rule)
        while not stop.wait(interval):
            log.info("probing rule %s", rule.rule_id)
            self.worker(rule)

    def worker(self, rule: ProbingRule) -> None:
        """Run one probe and evaluate its result."""
        strategy = rule.probing_endpoint_config.strategy
        try:
            values = dict(self.run_probe(rule))
        except Exception as exc:
            log.error("probe of rule %s failed: %s", rule.rule_id, exc)
            return

        event = self._default_event(rule)
        event.fingerprint = _fingerprint(rule)
        event.metric = _labels(values)
        try:
            if rule.rule_type != TCP:
                observed = float(values[strategy.field])
                condition = EvalCondition(
                    operator=strategy.operator,
                    query_value=observed,
                    expected_value=strategy.expected_value,
                )
            else:
                observed = 1.0 if values.get("IsSuccessful") is True else 0.0
                condition = EvalCondition(operator="==", query_value=observed, expected_value=1)
        except (KeyError, TypeError, ValueError) as exc:
            log.error("probe of rule %s lacks field %r: %s", rule.rule_id, strategy.field, exc)
            return
        event.metric["value"] = observed
        event.annotations = _render_variables(rule.annotations, event.metric)

        self.runtime.store.set_probing_values(event.probing_mapping_key(), values)
        self.evaluation(event, condition)

    def run_probe(self, rule: ProbingRule) -> Mapping[str, Any]:
        prober = self.probers.get(rule.rule_type)
        if prober is None:
            raise ValueError(f"unsupported rule type: {rule.rule_type}")
        return prober(rule)

    def evaluation(self, event: ProbingEvent, condition: EvalCondition) -> None:
        """Record a failure after enough consecutive hits, or recover a cached event."""
        if eval_condition(condition):
            with self._lock:
                self.timing[event.rule_id] = self.timing.get(event.rule_id, 0) + 1
                reached = (
                    self.timing[event.rule_id]
                    >= event.probing_endpoint_config.strategy.failure
                )
                if reached:
                    self.timing[event.rule_id] = 0
            if reached:
                save_probing_event(self.runtime, event)
            return

        store = self.runtime.store
        cached = store.get_probing_event(event.firing_cache_key())
        if cached is None:
            return
        now = int(time.time())
        if not cached.first_trigger_time:
            cached.first_trigger_time = now
        cached.is_recovered = True
        cached.recover_time = now
        cached.last_send_time = 0
        store.set_probing_event(cached)
        with self._lock:
            self.timing.pop(cached.rule_id, None)

    def _default_event(self, rule: ProbingRule) -> ProbingEvent:
        return ProbingEvent(
            tenant_id=rule.tenant_id,
            rule_id=rule.rule_id,
            rule_type=rule.rule_type,
            notice_id=rule.notice_id,
            severity=rule.severity,
            is_recovered=False,
            repeat_notice_interval=rule.repeat_notice_interval,
            recover_notify=rule.recover_notify,
            probing_endpoint_config=rule.probing_endpoint_config,
        )

    def repush(self, consumer: ProbingConsumer) -> None:
        """Start producing and consuming for every enabled probing rule."""
        for rule in self.runtime.repository.enabled_probing_rules():
            self.submit(rule)
            consumer.add(rule)


class ProbingConsumer:
    """Watches the cached result of each probing rule and sends notifications."""

    def __init__(self, runtime: Runtime, interval: float = 1.0) -> None:
        self.runtime = runtime
        self.interval = interval
        self._lock = threading.Lock()
        self._watchers: dict[str, threading.Event] = {}

    def add(self, rule: ProbingRule) -> None:
        stop = threading.Event()
        with self._lock:
            old = self._watchers.get(rule.rule_id)
            if old is not None:
                old.set()
            self._watchers[rule.rule_id] = stop
        threading.Thread(
            target=self._watch, args=(rule, stop), name=f"probe-consumer-{rule.rule_id}",
            daemon=True,
        ).start()

    def stop(self, rule_id: str) -> None:
        with self._lock:
            stop = self._watchers.pop(rule_id, None)
        if stop is not None:
            stop.set()

    def _watch(self, rule: ProbingRule, stop: threading.Event) -> None:
        key = rule.firing_cache_key()
        while not stop.wait(self.interval):
            event = self.runtime.store.get_probing_event(key)
            if event is None:
                continue
            try:
                self.handle_alert(event)
            except Exception:
                log.exception("probing notification for %s failed", rule.rule_id)

    def handle_alert(self, event: ProbingEvent) -> bool:
        """Send a notification for the event when due; return whether one was sent."""
        if not event.rule_id or not self.filter_event(event):
            return False
        notice = self.runtime.repository.get_notice(event.tenant_id, event.notice_id)
        if notice is None:
            notice = AlertNotice()
        event.duty_user = duty_user(self.runtime, notice)
        alert = to_alert_event(event)
        try:
            self.runtime.notifier.send(
                SendParams(
                    tenant_id=event.tenant_id,
                    severity=event.severity,
                    notice_type=notice.notice_type,
                    notice_id=notice.uuid,
                    notice_name=notice.name,
                    is_recovered=event.is_recovered,
                    hook=notice.hook,
                    email=list(notice.email),
                    content=_render(alert, notice),
                )
            )
        except Exception as exc:
            log.error("notification failed: %s", exc)
            return False
        return True

    def filter_event(self, event: ProbingEvent) -> bool:
        """Decide whether to notify; stamps the send time or drops recovered events."""
        store = self.runtime.store
        if event.is_recovered:
            store.delete_probing_event(event.firing_cache_key())
            return True
        due = event.last_send_time == 0 or (
            event.last_eval_time >= event.last_send_time + event.repeat_notice_interval * 60
        )
        if not due:
            return False
        stamped = ProbingEvent(**{**event.__dict__, "last_send_time": int(time.time())})
        store.set_probing_event(stamped)
        return True