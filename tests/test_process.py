from datetime import date

from opsmonitor.backends import EventStore, Runtime
from opsmonitor.models import AlertCurEvent, AlertNotice, AlertRule, PrometheusConfig
from opsmonitor.process import (
    build_event,
    duty_user,
    firing_keys,
    gc_pending_cache,
    gc_recover_wait_cache,
    notice_group_id,
    record_history,
    save_alert_event,
    save_event_cache,
    slice_difference,
    slice_same,
)
from opsmonitor.storage import AlarmRecoverWaitStore


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _rule(for_duration=0):
    return AlertRule(
        tenant_id="t",
        rule_id="r",
        rule_name="cpu",
        datasource_id_list=["d"],
        prometheus_config=PrometheusConfig(for_duration=for_duration),
    )


def _event(rule, fp="fp"):
    ev = build_event(rule)
    ev.datasource_id = "d"
    ev.fingerprint = fp
    return ev


def test_slices():
    assert slice_difference(["a", "b", "c"], ["b"]) == ["a", "c"]
    assert slice_same(["a", "b", "c"], ["c", "a"]) == ["a", "c"]


def test_build_event_copies_rule():
    ev = build_event(_rule(30))
    assert (ev.tenant_id, ev.rule_id, ev.rule_name, ev.for_duration) == ("t", "r", "cpu", 30)
    assert ev.is_recovered is False


def test_zero_duration_goes_firing():
    rt = Runtime()
    ev = _event(_rule())
    save_event_cache(rt, ev)
    assert rt.store.get_event(ev.firing_cache_key()) is not None
    assert rt.store.get_event(ev.pending_cache_key()) is None
    assert firing_keys(rt) == [ev.firing_cache_key()]


def test_duration_keeps_pending_then_fires():
    clock = Clock()
    rt = Runtime(store=EventStore(clock=clock))
    rule = _rule(60)
    save_event_cache(rt, _event(rule))
    ev = _event(rule)
    assert rt.store.get_event(ev.firing_cache_key()) is None
    assert rt.store.get_event(ev.pending_cache_key()) is not None
    clock.now += 60
    save_event_cache(rt, _event(rule))
    assert rt.store.get_event(ev.firing_cache_key()).first_trigger_time == 1000
    assert rt.store.get_event(ev.pending_cache_key()) is None


def test_save_alert_event_requires_rule():
    rt = Runtime()
    rule = _rule()
    save_alert_event(rt, _event(rule))
    assert firing_keys(rt) == []
    rt.repository.add_rule(rule)
    save_alert_event(rt, _event(rule))
    assert len(firing_keys(rt)) == 1


def test_gc_pending_cache_removes_stale():
    rt = Runtime()
    rule = _rule(60)
    keep, drop = _event(rule, "a"), _event(rule, "b")
    save_event_cache(rt, keep)
    save_event_cache(rt, drop)
    gc_pending_cache(rt, rule, [keep.pending_cache_key()])
    assert rt.store.get_event(keep.pending_cache_key()) is not None
    assert rt.store.get_event(drop.pending_cache_key()) is None


def test_gc_recover_wait_cache():
    rule = _rule()
    store = AlarmRecoverWaitStore()
    a, b = _event(rule, "a").firing_cache_key(), _event(rule, "b").firing_cache_key()
    store.set(a, 1)
    store.set(b, 1)
    gc_recover_wait_cache(store, rule, [a])
    assert store.get(a) is None
    assert store.get(b) == 1


def test_notice_group_id():
    ev = AlertCurEvent(
        notice_id="default",
        metric={"env": "prod"},
        notice_group=[{"key": "env", "value": "prod", "noticeId": "n-prod"}],
    )
    assert notice_group_id(ev) == "n-prod"
    ev.metric = {"env": "dev"}
    assert notice_group_id(ev) == "default"


def test_duty_user_formats():
    rt = Runtime()
    rt.repository.set_duty_user("duty", "2024-1-2", "u42")
    day = date(2024, 1, 2)
    assert duty_user(rt, AlertNotice(notice_type="FeiShu", duty_id="duty"), day) == "<at id=u42></at>"
    assert duty_user(rt, AlertNotice(notice_type="DingDing", duty_id="duty"), day) == "u42"
    assert duty_user(rt, AlertNotice(notice_type="Email", duty_id="duty"), day) == ""


def test_record_history():
    rt = Runtime()
    ev = _event(_rule())
    ev.recover_time = 5
    his = record_history(rt, ev)
    assert rt.repository.history() == [his]
    assert his.is_recovered is True and his.recover_time == 5