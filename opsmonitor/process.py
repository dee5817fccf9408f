"""Event building, caching and bookkeeping shared by the alert engine."""

from __future__ import annotations

from datetime import date
from typing import Iterable

from opsmonitor.backends import FIRING, PENDING, Runtime
from opsmonitor.models import (
    FIRING_ALERT_CACHE_PREFIX,
    AlertCurEvent,
    AlertHisEvent,
    AlertNotice,
    AlertRule,
)
from opsmonitor.storage import AlarmRecoverWaitStore


def slice_difference(left: Iterable[str], right: Iterable[str]) -> list[str]:
    """Items of ``left`` not present in ``right``, in order."""
    exclude = set(right)
    return [item for item in left if item not in exclude]


def slice_same(left: Iterable[str], right: Iterable[str]) -> list[str]:
    """Items of ``left`` also present in ``right``, in order."""
    include = set(right)
    return [item for item in left if item in include]


def build_event(rule: AlertRule) -> AlertCurEvent:
    return AlertCurEvent(
        tenant_id=rule.tenant_id,
        datasource_type=rule.datasource_type,
        rule_id=rule.rule_id,
        rule_name=rule.rule_name,
        labels=dict(rule.labels),
        eval_interval=rule.eval_interval,
        for_duration=rule.prometheus_config.for_duration,
        notice_id=rule.notice_id,
        notice_group=[dict(g) for g in rule.notice_group],
        is_recovered=False,
        repeat_notice_interval=rule.repeat_notice_interval,
        severity=rule.severity,
        effective_time=rule.effective_time,
        recover_notify=rule.recover_notify,
        alarm_aggregation=rule.alarm_aggregation,
    )


def save_event_cache(runtime: Runtime, event: AlertCurEvent) -> None:
    """Store the event as pending, promoting it to firing once its duration is met."""
    store = runtime.store
    with runtime.lock:
        firing_key = event.firing_cache_key()
        pending_key = event.pending_cache_key()
        firing = store.get_event(firing_key)
        if firing is not None and firing.fingerprint:
            event.first_trigger_time = firing.first_trigger_time
            event.last_eval_time = store.last_eval_time(firing_key)
            event.last_send_time = firing.last_send_time
            firing_sent = firing.last_send_time
        else:
            event.first_trigger_time = store.first_trigger_time(pending_key)
            event.last_eval_time = store.last_eval_time(pending_key)
            event.last_send_time = store.last_send_time(pending_key)
            store.set_event(PENDING, event)
            firing_sent = 0

        if firing_sent == 0 and event.last_eval_time - event.first_trigger_time < event.for_duration:
            return

        store.set_event(FIRING, event)
        store.delete_event(pending_key)


def save_alert_event(runtime: Runtime, event: AlertCurEvent) -> None:
    if runtime.repository.rule_exists(event.rule_id):
        save_event_cache(runtime, event)


def gc_pending_cache(runtime: Runtime, rule: AlertRule, cur_keys: Iterable[str]) -> None:
    """Drop pending entries that did not show up in the latest evaluation."""
    pending = runtime.store.rule_keys(PENDING, rule.tenant_id, rule.rule_id, rule.datasource_id_list)
    for key in slice_difference(pending, cur_keys):
        runtime.store.delete_event(key)


def gc_recover_wait_cache(
    store: AlarmRecoverWaitStore, rule: AlertRule, cur_keys: Iterable[str]
) -> None:
    """Forget recovery waits for keys that are firing again."""
    if not rule.datasource_id_list:
        return
    prefix = (
        f"{rule.tenant_id}:{FIRING_ALERT_CACHE_PREFIX}"
        f"{rule.rule_id}-{rule.datasource_id_list[0]}-"
    )
    for key in slice_same(store.search(prefix), cur_keys):
        store.remove(key)


def firing_keys(runtime: Runtime) -> list[str]:
    return runtime.store.scan(f"*:{FIRING_ALERT_CACHE_PREFIX}*")


def notice_group_id(alert: AlertCurEvent) -> str:
    """Notice id of the first group whose key/value matches the metric, else the default."""
    groups = [
        {g.get("key", ""): g.get("value", ""), "noticeId": g.get("noticeId", "")}
        for g in alert.notice_group
    ]
    for metric_key, metric_value in alert.metric.items():
        for group in groups:
            if metric_key in group and group[metric_key] == metric_value:
                return group["noticeId"]
    return alert.notice_id


def duty_user(runtime: Runtime, notice: AlertNotice, day: date | None = None) -> str:
    """Mention string for today's duty user, formatted for the notice type."""
    day = day or date.today()
    user_id = runtime.repository.duty_user(notice.duty_id, f"{day.year}-{day.month}-{day.day}")
    if len(user_id) > 1:
        if notice.notice_type == "FeiShu":
            return f"<at id={user_id}></at>"
        if notice.notice_type == "DingDing":
            return user_id
    return ""


def record_history(runtime: Runtime, alert: AlertCurEvent) -> AlertHisEvent:
    history = AlertHisEvent(
        tenant_id=alert.tenant_id,
        datasource_type=alert.datasource_type,
        datasource_id=alert.datasource_id,
        fingerprint=alert.fingerprint,
        rule_id=alert.rule_id,
        rule_name=alert.rule_name,
        severity=alert.severity,
        metric=dict(alert.metric),
        eval_interval=alert.eval_interval,
        annotations=alert.annotations,
        is_recovered=True,
        first_trigger_time=alert.first_trigger_time,
        last_eval_time=alert.last_eval_time,
        last_send_time=alert.last_send_time,
        recover_time=alert.recover_time,
    )
    runtime.repository.add_history(history)
    return history