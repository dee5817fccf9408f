import time

import pytest

from opsmonitor.backends import FIRING, Runtime
from opsmonitor.config import AlarmConfig
from opsmonitor.consumer import Consumer, group_hash, process_subscribe
from opsmonitor.models import AlertCurEvent, AlertNotice, AlertRule, AlertSubscribe


def make_runtime(group_wait=0, group_interval=0):
    runtime = Runtime(alarm=AlarmConfig(group_wait=group_wait, group_interval=group_interval))
    runtime.repository.add_rule(
        AlertRule(tenant_id="t1", rule_id="r1", rule_name="disk", datasource_id_list=["ds1"])
    )
    runtime.repository.add_notice(
        AlertNotice(tenant_id="t1", uuid="n1", name="ops", notice_type="Email", email=["ops@example.com"])
    )
    return runtime


def make_event(**kwargs):
    values = dict(
        tenant_id="t1",
        rule_id="r1",
        rule_name="disk",
        datasource_id="ds1",
        fingerprint="fp1",
        severity="P1",
        notice_id="n1",
        annotations="disk full",
        metric={"instance": "host-a"},
        repeat_notice_interval=60,
        last_eval_time=100,
    )
    values.update(kwargs)
    return AlertCurEvent(**values)


def test_group_hash_is_stable_hex():
    first = group_hash("env", "prod")
    assert first == group_hash("env", "prod")
    assert len(first) == 32
    assert all(c in "0123456789abcdef" for c in first)
    assert first != group_hash("env", "dev")


def test_filter_alerts_keeps_latest_per_fingerprint():
    consumer = Consumer(make_runtime())
    old = make_event(last_eval_time=10, annotations="old")
    new = make_event(last_eval_time=20, annotations="new")
    result = consumer.filter_alerts([old, new])
    assert [a.annotations for a in result["r1"]] == ["new"]


def test_filter_alerts_drops_within_repeat_interval():
    consumer = Consumer(make_runtime())
    recent = make_event(fingerprint="a", last_send_time=100, last_eval_time=150)
    due = make_event(fingerprint="b", last_send_time=100, last_eval_time=100 + 60 * 60)
    recovered = make_event(fingerprint="c", last_send_time=100, last_eval_time=150, is_recovered=True)
    result = consumer.filter_alerts([recent, due, recovered])
    assert sorted(a.fingerprint for a in result["r1"]) == ["b", "c"]


def test_add_alert_to_group_without_notice_group_uses_rule_id():
    consumer = Consumer(make_runtime())
    key = consumer.add_alert_to_group(make_event())
    assert key == "r1"
    assert [a.fingerprint for a in consumer.firing_groups["r1"]] == ["fp1"]
    assert not consumer.recovered_groups


def test_add_alert_to_group_with_matching_notice_group():
    consumer = Consumer(make_runtime())
    alert = make_event(
        is_recovered=True,
        notice_group=[{"key": "instance", "value": "host-a", "noticeId": "n2"}],
    )
    key = consumer.add_alert_to_group(alert)
    assert key == group_hash("instance", "host-a") + "_r1"
    assert consumer.recovered_groups[key] == [alert]


def test_process_alerts_sends_and_marks_send_time():
    runtime = make_runtime()
    event = make_event()
    runtime.store.set_event(FIRING, event)
    consumer = Consumer(runtime)
    consumer.process_alerts()
    assert len(runtime.notifier.sent) == 1
    sent = runtime.notifier.sent[0]
    assert sent.notice_id == "n1"
    assert sent.email == ["ops@example.com"]
    assert "disk full" in sent.content
    stored = runtime.store.get_event(event.firing_cache_key())
    assert stored.last_send_time > 0

    consumer.process_alerts()
    assert len(runtime.notifier.sent) == 1


def test_process_alerts_waits_for_group_wait():
    runtime = make_runtime(group_wait=2)
    runtime.store.set_event(FIRING, make_event())
    consumer = Consumer(runtime)
    consumer.process_alerts()
    consumer.process_alerts()
    assert runtime.notifier.sent == []
    consumer.process_alerts()
    assert len(runtime.notifier.sent) == 1


def test_recovered_event_is_recorded_and_removed():
    runtime = make_runtime()
    event = make_event(is_recovered=True, recover_time=500)
    runtime.store.set_event(FIRING, event)
    Consumer(runtime).process_alerts()
    assert runtime.store.get_event(event.firing_cache_key()) is None
    history = runtime.repository.history()
    assert [h.fingerprint for h in history] == ["fp1"]
    assert history[0].recover_time == 500
    assert [s.is_recovered for s in runtime.notifier.sent] == [True]


def test_recovery_notice_muted_when_disabled():
    runtime = make_runtime()
    runtime.store.set_event(FIRING, make_event(is_recovered=True, recover_notify=False))
    Consumer(runtime).process_alerts()
    assert runtime.notifier.sent == []
    assert len(runtime.repository.history()) == 1


def test_send_grouped_skips_unknown_rule():
    runtime = make_runtime()
    consumer = Consumer(runtime)
    consumer.send_grouped({"missing": [make_event(rule_id="missing")]})
    assert runtime.notifier.sent == []


def test_wait_time_depends_on_previous_send():
    runtime = make_runtime(group_wait=3, group_interval=7)
    sent_event = make_event(last_send_time=50)
    runtime.store.set_event(FIRING, sent_event)
    consumer = Consumer(runtime)
    assert consumer.wait_time("r1") == 3
    assert consumer.wait_time(sent_event.firing_cache_key()) == 7


def test_is_silenced_and_marks_expired():
    runtime = make_runtime()
    consumer = Consumer(runtime)
    runtime.store.set_silence("t1", "fp1", 600)
    assert consumer.is_silenced(make_event()) is True
    assert consumer.is_silenced(make_event(fingerprint="fp2")) is False
    assert runtime.repository.mark_silence_expired("fp2") is False


def test_group_alert_collapses_and_stores_send_time():
    runtime = make_runtime()
    consumer = Consumer(runtime)
    alerts = [make_event(fingerprint="a"), make_event(fingerprint="b")]
    result = consumer.group_alert(1234, alerts)
    assert len(result) == 1
    assert result[0].fingerprint == "b"
    assert result[0].annotations.startswith("disk full\n")
    assert "2" in result[0].annotations[len("disk full"):]
    for alert in alerts:
        assert runtime.store.get_event(alert.firing_cache_key()).last_send_time == 1234


def test_group_alert_skips_silenced():
    runtime = make_runtime()
    runtime.store.set_silence("t1", "b", 600)
    consumer = Consumer(runtime)
    result = consumer.group_alert(10, [make_event(fingerprint="a"), make_event(fingerprint="b")])
    assert [a.fingerprint for a in result] == ["a"]


def test_process_subscribe_filters_by_severity_and_text():
    runtime = make_runtime()
    repo = runtime.repository
    repo.add_subscribe(AlertSubscribe(tenant_id="t1", rule_id="r1", rule_severity=["P1"], user_email="a@example.com"))
    repo.add_subscribe(AlertSubscribe(tenant_id="t1", rule_id="r1", rule_severity=["P0"], user_email="b@example.com"))
    repo.add_subscribe(
        AlertSubscribe(tenant_id="t1", rule_id="r1", rule_severity=["P1"], filter=["host-a"], user_email="c@example.com")
    )
    repo.add_subscribe(
        AlertSubscribe(tenant_id="t1", rule_id="r1", rule_severity=["P1"], filter=["nomatch"], user_email="d@example.com")
    )
    sent = process_subscribe(runtime, make_event(), AlertNotice())
    assert sent == ["a@example.com", "c@example.com"]
    assert all(p.notice_type == "Email" for p in runtime.notifier.sent)
    assert [p.email for p in runtime.notifier.sent] == [["a@example.com"], ["c@example.com"]]


def test_process_subscribe_wraps_send_failure():
    class Failing:
        def send(self, params):
            raise OSError("down")

    runtime = make_runtime()
    runtime.notifier = Failing()
    runtime.repository.add_subscribe(
        AlertSubscribe(tenant_id="t1", rule_id="r1", rule_severity=["P1"], user_email="a@example.com")
    )
    with pytest.raises(RuntimeError):
        process_subscribe(runtime, make_event(), AlertNotice())


def test_handle_alert_routes_to_group_notice():
    runtime = make_runtime()
    runtime.repository.add_notice(AlertNotice(tenant_id="t1", uuid="n2", name="group", notice_type="Email"))
    consumer = Consumer(runtime)
    rule = runtime.repository.get_rule("r1")
    alert = make_event(notice_group=[{"key": "instance", "value": "host-a", "noticeId": "n2"}])
    consumer.handle_alert(rule, [alert])
    assert [(p.notice_id, p.notice_name) for p in runtime.notifier.sent] == [("n2", "group")]


def test_start_and_stop_runs_loop():
    runtime = make_runtime()
    runtime.store.set_event(FIRING, make_event())
    consumer = Consumer(runtime, interval=0.01)
    consumer.start()
    try:
        deadline = time.monotonic() + 2
        while not runtime.notifier.sent and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        consumer.stop()
    assert len(runtime.notifier.sent) == 1