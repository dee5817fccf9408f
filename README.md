# opsmonitor

An alerting engine for operations monitoring, as a library. It evaluates
alert rules against metric, log and trace datasources, keeps pending and
firing alert events, promotes pending events to firing once their duration
is met, groups and de-duplicates firing events, honours silences and
effective-time windows, notifies on-call users and subscribers, and runs
endpoint probes with failure thresholds.

Storage, records and notification are reached through small in-memory
backend objects bundled in a `Runtime`, so the engine can be embedded in a
service or driven directly from tests.

## Modules

| Module | What it holds |
| --- | --- |
| `opsmonitor.config` | `AppConfig`, `ServerConfig`, `AlarmConfig`, `MySQLConfig`, `RedisConfig`, `JwtConfig`, `JaegerConfig`; `parse_config` and `load_config` |
| `opsmonitor.conditions` | `EvalCondition` and `eval_condition` |
| `opsmonitor.models` | Rules, events, notices, subscriptions, probing rules and events, with their cache keys |
| `opsmonitor.mute` | `MuteParams`, `is_muted`, `in_effective_time`, `recover_notify` |
| `opsmonitor.storage` | `AlarmRecoverWaitStore`, `AlertsCurEventCache`, `AlertNotFoundError` |
| `opsmonitor.backends` | `EventStore`, `Repository`, `Notifier`, `CollectingNotifier`, `SendParams`, `Runtime` |
| `opsmonitor.process` | Building and caching events, pending/recovery garbage collection, notice-group and duty-user lookup, history records |
| `opsmonitor.consumer` | `Consumer`, `process_subscribe`, `group_hash` |
| `opsmonitor.evaluator` | `RuleEvaluator`, `ProviderPool`, `Datasource`, `MetricSample`, `LogRecord`, `TraceRecord`, `query_metrics`, `query_logs`, `query_traces`, `parse_rule_expr` |
| `opsmonitor.probing` | `ProbingProducer`, `ProbingConsumer`, `save_probing_event`, `to_alert_event` |

## Configuration

`load_config` reads a YAML file (by default `config/config.yaml`); keys are
matched case-insensitively and missing keys take empty or zero values. An
unreadable or malformed file raises `ValueError`.

```yaml
Server:
  mode: release
  port: "9001"
  enablePprof: false
  alarmConfig:
    groupWait: 10
    groupInterval: 120
    recoverWait: 1
MySQL:
  host: localhost
  port: "3306"
  user: user
  pass: password
  dbName: opsmonitor
  timeout: 10s
Redis:
  host: localhost
  port: "6379"
  pass: password
Jwt:
  expire: 18000
Jaeger:
  url: http://localhost:16686
```

```python
from opsmonitor.config import load_config

config = load_config("config/config.yaml")
print(config.server.alarm_config.group_wait)
```

`parse_config` builds the same `AppConfig` from an already-loaded mapping.
The `pass` keys end up in the `password` fields.

## Evaluating conditions

```python
from opsmonitor.conditions import EvalCondition, eval_condition

breached = eval_condition(
    EvalCondition(operator=">", query_value=93.5, expected_value=80)
)
```

The operators are `>`, `>=`, `<`, `<=`, `==` and `!=`; an unknown operator
is logged and never breaches. For metric rules, `parse_rule_expr(">80")`
returns `(">", 80.0)` and raises `ValueError` on an expression without a
number.

## Muting

`is_muted(params, now=None)` is true when `now` falls outside the
effective-time window (weekday names as given by `strftime("%A")`, and a
start/end in seconds since midnight), or when the event is a recovery and
recovery notices are switched off. An empty weekday list means always
effective.

## Stores with expiry

`AlarmRecoverWaitStore` remembers when a firing key first looked recovered;
`AlertsCurEventCache` holds events by fingerprint and raises
`AlertNotFoundError` for a missing one. Entries expire after 24 hours by
default; `set_with_expiration` takes its own lifetime (zero means the
default, a negative value never expires), and `purge_expired` drops expired
events.

```python
from opsmonitor.storage import AlarmRecoverWaitStore

store = AlarmRecoverWaitStore()
store.set("tenant:firing:rule-1-ds-1-abc", 1700000000)
waiting = store.search("tenant:firing:rule-1-")
```

## Running the engine

Create a `Runtime` (an `EventStore`, a `Repository`, a notifier and an
`AlarmConfig`), add rules and notices to its repository, and hand it to:

- `RuleEvaluator(runtime, pool)`: `submit(rule)` starts a watcher thread
  per enabled rule that evaluates every `eval_interval` ticks, saves
  pending and firing events, marks events recovered after
  `recover_wait` minutes of absence, and cleans up stale pending entries.
  `repush()` submits every enabled rule.
- `Consumer(runtime)`: `start()` runs `process_alerts` in a background
  thread once per `interval`; each tick loads firing events and, after
  `group_wait` (or `group_interval`) ticks, de-duplicates them by
  fingerprint, groups them by notice group or rule, records recovered ones
  in history, e-mails matching subscribers and sends the notifications.
- `ProbingProducer(runtime, probers)` and `ProbingConsumer(runtime)` do the
  same for endpoint probes; `repush(consumer)` starts both for every
  enabled probing rule.

Datasource clients are registered in a `ProviderPool` with a `Datasource`
describing their type and external labels. A metrics client has
`query(promql)` returning `MetricSample`s; a log client has
`query(options)` returning `(records, count)`; a trace client has
`query(options)` returning `TraceRecord`s. A client may offer
`check_health()`; a datasource whose check fails is skipped.

A prober is a callable taking a `ProbingRule` and returning a mapping of
values, registered under a rule type (`"ICMP"`, `"HTTP"`, `"TCP"`,
`"SSL"`). The rule's strategy field is compared with its operator; for
`"TCP"` the value `IsSuccessful` must be `True`.

## What the package does not do

- It has no command, HTTP API or user interface; it is used from Python.
- Its stores and repository are in memory only; nothing is written to a
  database or cache server.
- It ships no network probers and no datasource clients; the caller
  supplies them.
- It delivers no messages itself: notifications go to the `Notifier` in
  the runtime, and the bundled `CollectingNotifier` only keeps them in its
  `sent` list.

## Tests

The test suite uses pytest and is installed with the `test` extra.