"""Periodic evaluation of alert rules against their datasources."""

from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from opsmonitor.backends import FIRING, Runtime
from opsmonitor.conditions import EvalCondition, eval_condition
from opsmonitor.models import AlertCurEvent, AlertRule
from opsmonitor.process import (
    build_event,
    gc_pending_cache,
    gc_recover_wait_cache,
    save_alert_event,
    slice_difference,
)
from opsmonitor.storage import AlarmRecoverWaitStore

log = logging.getLogger(__name__)

PROMETHEUS = "Prometheus"
VICTORIA_METRICS = "VictoriaMetrics"
ALI_CLOUD_SLS = "AliCloudSLS"
ELASTIC_SEARCH = "ElasticSearch"
JAEGER = "Jaeger"

_RULE_EXPR = re.compile(r"([^\d]+)(\d+)")
_VARIABLE = re.compile(r"\$\{(\w+)\}")


def _digest(value: Any) -> str:
    text = json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.md5(text.encode("utf-8")).hexdigest()


@dataclass
class MetricSample:
    """One series returned by a metrics query."""

    labels: dict[str, Any] = field(default_factory=dict)
    value: float = 0.0
    fingerprint: str = ""

    def __post_init__(self) -> None:
        if not self.fingerprint:
            self.fingerprint = _digest(self.labels)


@dataclass
class LogRecord:
    """One log line returned by a log query."""

    metric: dict[str, Any] = field(default_factory=dict)
    message: str = ""
    fingerprint: str = ""

    def __post_init__(self) -> None:
        if not self.fingerprint:
            self.fingerprint = _digest({"metric": self.metric, "message": self.message})


@dataclass
class TraceRecord:
    """One trace with an abnormal status returned by a trace query."""

    trace_id: str = ""
    metric: dict[str, Any] = field(default_factory=dict)
    fingerprint: str = ""

    def __post_init__(self) -> None:
        if not self.fingerprint:
            self.fingerprint = _digest(self.trace_id)


@dataclass
class Datasource:
    id: str = ""
    type: str = ""
    external_labels: dict[str, Any] = field(default_factory=dict)


class ProviderPool:
    """Registered datasources and the clients that query them."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: dict[str, tuple[Datasource, Any]] = {}

    def register(self, datasource: Datasource, client: Any) -> None:
        with self._lock:
            self._entries[datasource.id] = (datasource, client)

    def _entry(self, datasource_id: str) -> tuple[Datasource, Any]:
        with self._lock:
            entry = self._entries.get(datasource_id)
        if entry is None:
            raise LookupError(f"datasource {datasource_id!r} not found")
        return entry

    def get_instance(self, datasource_id: str) -> Datasource:
        return self._entry(datasource_id)[0]

    def get_client(self, datasource_id: str) -> Any:
        return self._entry(datasource_id)[1]


def _is_healthy(pool: ProviderPool, datasource_id: str) -> bool:
    check = getattr(pool.get_client(datasource_id), "check_health", None)
    if check is None:
        return True
    try:
        return bool(check())
    except Exception as exc:
        log.error("health check of datasource %s failed: %s", datasource_id, exc)
        return False


@dataclass
class EvalResult:
    firing_keys: list[str] = field(default_factory=list)
    pending_keys: list[str] = field(default_factory=list)
    error: Exception | None = None


def parse_rule_expr(expr: str) -> tuple[str, float]:
    """Split an expression such as ``>80`` into its operator and threshold."""
    match = _RULE_EXPR.search(expr)
    if match is None:
        raise ValueError(f"invalid rule expression: {expr!r}")
    return match.group(1), float(match.group(2))


def _render_variables(template: str, metric: dict[str, Any]) -> str:
    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        return str(metric[name]) if name in metric else match.group(0)

    return _VARIABLE.sub(replace, template)


def _format_json(text: str) -> str:
    try:
        return json.dumps(json.loads(text), indent=2, ensure_ascii=False)
    except (TypeError, ValueError):
        return text


def _utc(seconds: float) -> str:
    return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _new_event(rule: AlertRule, datasource_id: str, fingerprint: str,
               metric: dict[str, Any], external_labels: dict[str, Any]) -> AlertCurEvent:
    event = build_event(rule)
    event.datasource_id = datasource_id
    event.fingerprint = fingerprint
    event.metric = dict(metric)
    event.metric.update(external_labels)
    return event


def query_metrics(runtime: Runtime, pool: ProviderPool, datasource_id: str,
                  datasource_type: str, rule: AlertRule) -> tuple[list[str], list[str]]:
    """Query a Prometheus-style datasource; return the firing and pending keys."""
    firing: list[str] = []
    pending: list[str] = []
    if datasource_type not in (PROMETHEUS, VICTORIA_METRICS):
        log.error("unsupported metrics type: %s", datasource_type)
        return firing, pending
    try:
        client = pool.get_client(datasource_id)
        labels = pool.get_instance(datasource_id).external_labels
        samples = client.query(rule.prometheus_config.promql)
    except Exception as exc:
        log.error("metrics query on %s failed: %s", datasource_id, exc)
        return firing, pending

    for sample in samples or []:
        for rule_expr in rule.prometheus_config.rules:
            op, threshold = parse_rule_expr(rule_expr.expr)
            condition = EvalCondition(operator=op, query_value=sample.value, expected_value=threshold)
            if not eval_condition(condition):
                continue
            event = _new_event(rule, datasource_id, sample.fingerprint, {}, {})
            event.metric = dict(sample.labels)
            event.metric["severity"] = rule_expr.severity
            event.metric.update(labels)
            event.severity = rule_expr.severity
            event.annotations = _render_variables(rule.prometheus_config.annotations, event.metric)
            firing.append(event.firing_cache_key())
            pending.append(event.pending_cache_key())
            save_alert_event(runtime, event)
    return firing, pending


def query_logs(runtime: Runtime, pool: ProviderPool, datasource_id: str,
               datasource_type: str, rule: AlertRule) -> list[str]:
    """Query a log datasource and save an event per record when the count matches."""
    keys: list[str] = []
    now = time.time()
    try:
        if datasource_type == ALI_CLOUD_SLS:
            config = rule.ali_cloud_sls_config
            client = pool.get_client(datasource_id)
            options = {
                "query": config.logql,
                "project": config.project,
                "logstore": config.logstore,
                "start_at": int(now - config.log_scope * 60),
                "end_at": int(now),
            }
            records, count = client.query(options)
            condition = EvalCondition(
                operator=config.eval_condition.operator,
                query_value=float(count),
                expected_value=config.eval_condition.expected_value,
            )
        elif datasource_type == ELASTIC_SEARCH:
            config = rule.elastic_search_config
            client = pool.get_client(datasource_id)
            options = {
                "index": config.index,
                "filter": config.filter,
                "start_at": _utc(now - config.scope * 60),
                "end_at": _utc(now),
            }
            records, count = client.query(options)
            condition = EvalCondition(operator=">", query_value=float(count), expected_value=1)
        else:
            return keys
        labels = pool.get_instance(datasource_id).external_labels
    except Exception as exc:
        log.error("log query on %s failed: %s", datasource_id, exc)
        return keys

    if count <= 0:
        return keys

    for record in records or []:
        if not eval_condition(condition):
            continue
        event = _new_event(rule, datasource_id, record.fingerprint, record.metric, labels)
        event.annotations = f"log count: {count}\n{_format_json(record.message)}"
        keys.append(event.pending_cache_key())
        save_alert_event(runtime, event)
    return keys


def query_traces(runtime: Runtime, pool: ProviderPool, datasource_id: str,
                 datasource_type: str, rule: AlertRule) -> list[str]:
    """Query a trace datasource and save an event for every abnormal trace."""
    keys: list[str] = []
    if datasource_type != JAEGER:
        return keys
    config = rule.jaeger_config
    now = time.time()
    try:
        client = pool.get_client(datasource_id)
        options = {
            "tags": config.tags,
            "service": config.service,
            "start_at": int((now - config.scope * 60) * 1_000_000),
            "end_at": int(now * 1_000_000),
        }
        records = client.query(options)
        labels = pool.get_instance(datasource_id).external_labels
    except Exception as exc:
        log.error("trace query on %s failed: %s", datasource_id, exc)
        return keys

    for record in records or []:
        event = _new_event(rule, datasource_id, record.fingerprint, record.metric, labels)
        event.annotations = (
            f"service: {config.service} has an interface with an abnormal status code "
            f"in its trace, TraceId: {record.trace_id}"
        )
        keys.append(event.firing_cache_key())
        save_alert_event(runtime, event)
    return keys


class RuleEvaluator:
    """Runs one watcher thread per alert rule and tracks recoveries.

    ``tick`` is the length in seconds of one unit of a rule's eval interval.
    """

    def __init__(
        self,
        runtime: Runtime,
        pool: ProviderPool,
        recover_store: AlarmRecoverWaitStore | None = None,
        clock: Callable[[], float] = time.time,
        tick: float = 1.0,
    ) -> None:
        self.runtime = runtime
        self.pool = pool
        self.recover_store = recover_store if recover_store is not None else AlarmRecoverWaitStore()
        self.clock = clock
        self.tick = tick
        self._lock = threading.Lock()
        self._watchers: dict[str, threading.Event] = {}

    def _is_enabled(self, rule_id: str) -> bool:
        rule = self.runtime.repository.get_rule(rule_id)
        return rule is not None and rule.enabled

    def submit(self, rule: AlertRule) -> None:
        """Start watching a rule, replacing any watcher already running for it."""
        if not self._is_enabled(rule.rule_id):
            raise ValueError(f"rule {rule.rule_id} is disabled")
        if rule.eval_interval <= 0:
            raise ValueError(f"rule {rule.rule_id} has a non-positive eval interval")
        stop = threading.Event()
        with self._lock:
            old = self._watchers.get(rule.rule_id)
            if old is not None:
                old.set()
            self._watchers[rule.rule_id] = stop
        threading.Thread(
            target=self._watch, args=(rule, stop), name=f"rule-{rule.rule_id}", daemon=True
        ).start()

    def stop(self, rule_id: str) -> None:
        with self._lock:
            stop = self._watchers.pop(rule_id, None)
        if stop is not None:
            stop.set()

    def _watch(self, rule: AlertRule, stop: threading.Event) -> None:
        interval = rule.eval_interval * self.tick
        while not stop.wait(interval):
            try:
                if not self._is_enabled(rule.rule_id):
                    return
                result = self.evaluate_rule(rule)
                if result.error is not None:
                    log.error("rule evaluation failed: %s", result.error)
                    continue
                self.recover(rule, result.firing_keys)
                self.gc(rule, result.firing_keys, result.pending_keys)
            except Exception:
                log.exception("rule %s evaluation aborted", rule.rule_id)
                return
        log.info("stopping watch routine for rule: %s", rule.rule_id)

    def evaluate_rule(self, rule: AlertRule) -> EvalResult:
        result = EvalResult()
        for ds_id in rule.datasource_id_list:
            try:
                instance = self.pool.get_instance(ds_id)
            except LookupError as exc:
                log.error("failed to get datasource instance: %s", exc)
                continue
            if not _is_healthy(self.pool, ds_id):
                continue

            firing: list[str] = []
            pending: list[str] = []
            if rule.datasource_type in (PROMETHEUS, VICTORIA_METRICS):
                firing, pending = query_metrics(self.runtime, self.pool, ds_id, instance.type, rule)
            elif rule.datasource_type in (ALI_CLOUD_SLS, ELASTIC_SEARCH):
                firing = query_logs(self.runtime, self.pool, ds_id, instance.type, rule)
            elif rule.datasource_type == JAEGER:
                firing = query_traces(self.runtime, self.pool, ds_id, instance.type, rule)
            result.firing_keys.extend(firing)
            result.pending_keys.extend(pending)
        return result

    def recover(self, rule: AlertRule, cur_keys: list[str]) -> list[str]:
        """Mark firing events absent from ``cur_keys`` as recovered once their wait ends."""
        firing = self.runtime.store.rule_keys(
            FIRING, rule.tenant_id, rule.rule_id, rule.datasource_id_list
        )
        now = int(self.clock())
        recovered = []
        for key in slice_difference(firing, cur_keys):
            try:
                if self._process_recovery(key, now):
                    recovered.append(key)
            except Exception as exc:
                log.error("recovery processing failed for key %s: %s", key, exc)
        return recovered

    def _process_recovery(self, key: str, now: int) -> bool:
        store = self.runtime.store
        event = store.get_event(key)
        if event is None or event.is_recovered:
            return False
        started = self.recover_store.get(key)
        if started is None:
            self.recover_store.set(key, now)
            return False
        if now < started + self.runtime.alarm.recover_wait * 60:
            return False
        event.is_recovered = True
        event.recover_time = now
        event.last_send_time = 0
        store.set_event(FIRING, event)
        self.recover_store.remove(key)
        return True

    def gc(self, rule: AlertRule, cur_firing_keys: list[str], cur_pending_keys: list[str]) -> None:
        gc_pending_cache(self.runtime, rule, cur_pending_keys)
        gc_recover_wait_cache(self.recover_store, rule, cur_firing_keys)

    def repush(self) -> None:
        """Submit every enabled rule; raise after all attempts if any failed."""
        errors = []
        for rule in self.runtime.repository.enabled_rules():
            try:
                self.submit(rule)
            except Exception as exc:
                log.error("failed to submit rule %s: %s", rule.rule_id, exc)
                errors.append(exc)
        if errors:
            raise RuntimeError(f"failed to re-push task: {errors[0]}") from errors[0]