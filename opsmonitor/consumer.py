"""Consumption of firing events: grouping, de-duplication and notification."""

from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import threading
import time
from collections import defaultdict
from typing import Any

from opsmonitor.backends import FIRING, Runtime, SendParams
from opsmonitor.models import AlertCurEvent, AlertNotice, AlertRule
from opsmonitor.mute import MuteParams, is_muted
from opsmonitor.process import duty_user, firing_keys, notice_group_id, record_history

log = logging.getLogger(__name__)


def group_hash(key: str, value: str) -> str:
    """Stable identifier of a notice group built from a metric label pair."""
    return hashlib.md5(f"{key}:{value}".encode("utf-8")).hexdigest()


def _metric_json(metric: dict[str, Any]) -> str:
    return json.dumps(metric, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def _render(alert: AlertCurEvent, notice: AlertNotice) -> str:
    status = "recovered" if alert.is_recovered else "firing"
    lines = [
        f"rule: {alert.rule_name}",
        f"severity: {alert.severity}",
        f"status: {status}",
        f"fingerprint: {alert.fingerprint}",
        f"metric: {_metric_json(alert.metric)}",
        f"annotations: {alert.annotations}",
    ]
    if alert.duty_user:
        lines.append(f"duty: {alert.duty_user}")
    if notice.notice_tmpl_id:
        lines.append(f"template: {notice.notice_tmpl_id}")
    return "\n".join(lines)


def process_subscribe(runtime: Runtime, alert: AlertCurEvent, notice: AlertNotice) -> list[str]:
    """E-mail the alert to every matching subscriber; return the addresses used."""
    subscribes = runtime.repository.list_subscribes(alert.tenant_id, alert.rule_id)
    notice = dataclasses.replace(notice, notice_type="Email")
    metric_text = _metric_json(alert.metric)

    recipients = []
    for sub in subscribes:
        if alert.severity not in sub.rule_severity:
            continue
        if sub.filter and not any(f in metric_text or f in alert.annotations for f in sub.filter):
            continue
        recipients.append(sub)

    sent = []
    for sub in recipients:
        notice.notice_tmpl_id = sub.notice_template_id
        params = SendParams(
            tenant_id=alert.tenant_id,
            rule_name=alert.rule_name,
            severity=alert.severity,
            notice_type="Email",
            notice_id=notice.uuid,
            notice_name=sub.notice_subject,
            is_recovered=alert.is_recovered,
            email=[sub.user_email],
            content=_render(alert, notice),
        )
        try:
            runtime.notifier.send(params)
        except Exception as exc:
            raise RuntimeError(f"email send failed: {exc}") from exc
        sent.append(sub.user_email)
    return sent


class Consumer:
    """Periodically gathers firing events and sends notifications for them.

    ``alerts_map`` holds the events loaded per rule id, ``timing`` counts the
    ticks each rule has waited, and ``firing_groups``/``recovered_groups`` hold
    events grouped for sending.
    """

    def __init__(self, runtime: Runtime, interval: float = 1.0) -> None:
        self.runtime = runtime
        self.interval = interval
        self.alerts_map: dict[str, list[AlertCurEvent]] = defaultdict(list)
        self.firing_groups: dict[str, list[AlertCurEvent]] = defaultdict(list)
        self.recovered_groups: dict[str, list[AlertCurEvent]] = defaultdict(list)
        self.timing: dict[str, int] = defaultdict(int)
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Run the consumption loop in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="alert-consumer", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.process_alerts()
            except Exception:
                log.exception("alert consumption failed")
            self._stop.wait(self.interval)

    def process_alerts(self) -> None:
        """One tick: load firing events and send those whose group wait has elapsed."""
        self._load_alerts(firing_keys(self.runtime))
        with self._lock:
            snapshot = [(k, list(v)) for k, v in self.alerts_map.items()]
        for rule_id, alerts in snapshot:
            if not alerts:
                continue
            if self.timing[rule_id] >= self.wait_time(rule_id):
                self.fire_alert_event(self.filter_alerts(alerts))
                self._clear(rule_id)
            with self._lock:
                self.timing[rule_id] += 1

    def _load_alerts(self, keys: list[str]) -> None:
        for key in keys:
            alert = self.runtime.store.get_event(key)
            if alert is not None and alert.fingerprint:
                with self._lock:
                    self.alerts_map[alert.rule_id].append(alert)

    def wait_time(self, key: str) -> int:
        """Group interval when the event under ``key`` was sent before, else group wait."""
        alert = self.runtime.store.get_event(key)
        if alert is None or alert.last_send_time == 0:
            return self.runtime.alarm.group_wait
        return self.runtime.alarm.group_interval

    def _clear(self, rule_id: str) -> None:
        suffix = "_" + rule_id
        with self._lock:
            self.alerts_map.pop(rule_id, None)
            for groups in (self.firing_groups, self.recovered_groups):
                for key in [k for k in groups if k == rule_id or k.endswith(suffix)]:
                    del groups[key]
            self.timing[rule_id] = 0

    def filter_alerts(self, alerts: list[AlertCurEvent]) -> dict[str, list[AlertCurEvent]]:
        """Keep the latest event per fingerprint and drop those inside the repeat interval."""
        latest: dict[str, AlertCurEvent] = {}
        for alert in alerts:
            existing = latest.get(alert.fingerprint)
            if existing is None or alert.last_eval_time > existing.last_eval_time:
                latest[alert.fingerprint] = alert

        result: dict[str, list[AlertCurEvent]] = defaultdict(list)
        for alert in latest.values():
            due = alert.last_send_time == 0 or (
                alert.last_eval_time >= alert.last_send_time + alert.repeat_notice_interval * 60
            )
            if alert.is_recovered or due:
                result[alert.rule_id].append(alert)
        return dict(result)

    def fire_alert_event(self, alerts_map: dict[str, list[AlertCurEvent]]) -> None:
        for alerts in alerts_map.values():
            for alert in alerts:
                self.add_alert_to_group(alert)
                if alert.is_recovered:
                    self.runtime.store.delete_event(alert.firing_cache_key())
                    record_history(self.runtime, alert)
        with self._lock:
            firing = {k: list(v) for k, v in self.firing_groups.items()}
            recovered = {k: list(v) for k, v in self.recovered_groups.items()}
        self.send_grouped(firing)
        self.send_grouped(recovered)

    def add_alert_to_group(self, alert: AlertCurEvent) -> str:
        """File the alert under its notice group or its rule id; return the group key."""
        group_key = alert.rule_id
        if alert.notice_group:
            for key, value in alert.metric.items():
                if any(g.get("key") == key and g.get("value") == value for g in alert.notice_group):
                    group_key = f"{group_hash(key, str(value))}_{alert.rule_id}"
                    break
        with self._lock:
            target = self.recovered_groups if alert.is_recovered else self.firing_groups
            target[group_key].append(alert)
        return group_key

    def send_grouped(self, mapping: dict[str, list[AlertCurEvent]]) -> None:
        for key, alerts in mapping.items():
            if "_" in key:
                key = key.split("_")[1]
            rule = self.runtime.repository.get_rule(key)
            if rule is None or not rule.rule_id or not alerts:
                continue
            self.handle_subscribe(alerts)
            self.handle_alert(rule, alerts)

    def _notice_for(self, alert: AlertCurEvent) -> tuple[str, AlertNotice]:
        notice_id = notice_group_id(alert)
        notice = self.runtime.repository.get_notice(alert.tenant_id, notice_id)
        return notice_id, notice if notice is not None else AlertNotice()

    def handle_subscribe(self, alerts: list[AlertCurEvent]) -> None:
        for alert in alerts:
            _, notice = self._notice_for(alert)
            try:
                process_subscribe(self.runtime, alert, notice)
            except Exception as exc:
                log.error("subscription processing failed: %s", exc)

    def handle_alert(self, rule: AlertRule, alerts: list[AlertCurEvent]) -> None:
        now = int(time.time())
        if rule.alarm_aggregation:
            alerts = self.group_alert(now, alerts)

        for alert in alerts:
            notice_id, notice = self._notice_for(alert)
            if not alert.is_recovered:
                alert.last_send_time = now
                self.runtime.store.set_event(FIRING, alert)

            alert.duty_user = duty_user(self.runtime, notice)
            params = MuteParams(
                effective_time=alert.effective_time,
                recover_notify=alert.recover_notify,
                is_recovered=alert.is_recovered,
            )
            if is_muted(params):
                return

            try:
                self.runtime.notifier.send(
                    SendParams(
                        tenant_id=alert.tenant_id,
                        rule_name=alert.rule_name,
                        severity=alert.severity,
                        notice_type=notice.notice_type,
                        notice_id=notice_id,
                        notice_name=notice.name,
                        is_recovered=alert.is_recovered,
                        hook=notice.hook,
                        email=list(notice.email),
                        content=_render(alert, notice),
                    )
                )
            except Exception as exc:
                log.error("notification failed: %s", exc)
                return

    def group_alert(self, now: int, alerts: list[AlertCurEvent]) -> list[AlertCurEvent]:
        """Collapse the alerts into one message carrying the aggregate count."""
        content = f"aggregated {len(alerts)} alerts\n" if len(alerts) > 1 else ""
        result: list[AlertCurEvent] = []
        for alert in alerts:
            if not self.is_silenced(alert):
                result = [dataclasses.replace(alert, annotations=alert.annotations + "\n" + content)]
            if not alert.is_recovered:
                alert.last_send_time = now
                self.runtime.store.set_event(FIRING, alert)
        return result

    def is_silenced(self, alert: AlertCurEvent) -> bool:
        store = self.runtime.store
        if store.is_silenced(alert.tenant_id, alert.fingerprint):
            return True
        if store.silence_ttl(alert.tenant_id, alert.fingerprint) < 0:
            self.runtime.repository.mark_silence_expired(alert.fingerprint)
        return False