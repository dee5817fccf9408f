"""Alert rules, events and related records."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from opsmonitor.conditions import EvalCondition

FIRING_ALERT_CACHE_PREFIX = "firing:"
PENDING_ALERT_CACHE_PREFIX = "pending:"
SILENCE_CACHE_PREFIX = "silence:"
PROBING_FIRING_CACHE_PREFIX = "probing:firing:"
PROBING_VALUE_CACHE_PREFIX = "probing:value:"


@dataclass
class EffectiveTime:
    week: list[str] = field(default_factory=list)
    start_time: int = 0
    end_time: int = 0


@dataclass
class RuleExpr:
    severity: str = ""
    expr: str = ""


@dataclass
class PrometheusConfig:
    promql: str = ""
    annotations: str = ""
    for_duration: int = 0
    rules: list[RuleExpr] = field(default_factory=list)


@dataclass
class AliCloudSLSConfig:
    project: str = ""
    logstore: str = ""
    logql: str = ""
    log_scope: int = 0
    eval_condition: EvalCondition = field(default_factory=EvalCondition)


@dataclass
class ElasticSearchConfig:
    index: str = ""
    scope: int = 0
    filter: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class JaegerRuleConfig:
    service: str = ""
    scope: int = 0
    tags: str = ""


@dataclass
class AlertRule:
    tenant_id: str = ""
    rule_id: str = ""
    rule_group_id: str = ""
    rule_name: str = ""
    datasource_type: str = ""
    datasource_id_list: list[str] = field(default_factory=list)
    eval_interval: int = 0
    repeat_notice_interval: int = 0
    severity: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    notice_id: str = ""
    notice_group: list[dict[str, str]] = field(default_factory=list)
    effective_time: EffectiveTime = field(default_factory=EffectiveTime)
    recover_notify: bool = True
    alarm_aggregation: bool = False
    enabled: bool = True
    prometheus_config: PrometheusConfig = field(default_factory=PrometheusConfig)
    ali_cloud_sls_config: AliCloudSLSConfig = field(default_factory=AliCloudSLSConfig)
    elastic_search_config: ElasticSearchConfig = field(default_factory=ElasticSearchConfig)
    jaeger_config: JaegerRuleConfig = field(default_factory=JaegerRuleConfig)


def _firing_key(tenant_id: str, rule_id: str, datasource_id: str, fingerprint: str) -> str:
    return f"{tenant_id}:{FIRING_ALERT_CACHE_PREFIX}{rule_id}-{datasource_id}-{fingerprint}"


@dataclass
class AlertCurEvent:
    tenant_id: str = ""
    datasource_type: str = ""
    datasource_id: str = ""
    fingerprint: str = ""
    rule_id: str = ""
    rule_name: str = ""
    severity: str = ""
    metric: dict[str, Any] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    eval_interval: int = 0
    for_duration: int = 0
    notice_id: str = ""
    notice_group: list[dict[str, str]] = field(default_factory=list)
    annotations: str = ""
    is_recovered: bool = False
    first_trigger_time: int = 0
    first_trigger_time_format: str = ""
    repeat_notice_interval: int = 0
    last_eval_time: int = 0
    last_send_time: int = 0
    recover_time: int = 0
    recover_time_format: str = ""
    duty_user: str = ""
    effective_time: EffectiveTime = field(default_factory=EffectiveTime)
    recover_notify: bool = True
    alarm_aggregation: bool = False

    def firing_cache_key(self) -> str:
        return _firing_key(self.tenant_id, self.rule_id, self.datasource_id, self.fingerprint)

    def pending_cache_key(self) -> str:
        return (
            f"{self.tenant_id}:{PENDING_ALERT_CACHE_PREFIX}"
            f"{self.rule_id}-{self.datasource_id}-{self.fingerprint}"
        )


@dataclass
class AlertHisEvent:
    tenant_id: str = ""
    datasource_type: str = ""
    datasource_id: str = ""
    fingerprint: str = ""
    rule_id: str = ""
    rule_name: str = ""
    severity: str = ""
    metric: dict[str, Any] = field(default_factory=dict)
    eval_interval: int = 0
    annotations: str = ""
    is_recovered: bool = True
    first_trigger_time: int = 0
    last_eval_time: int = 0
    last_send_time: int = 0
    recover_time: int = 0


@dataclass
class AlertNotice:
    tenant_id: str = ""
    uuid: str = ""
    name: str = ""
    notice_type: str = ""
    notice_tmpl_id: str = ""
    duty_id: str = ""
    hook: str = ""
    email: list[str] = field(default_factory=list)


@dataclass
class AlertSubscribe:
    tenant_id: str = ""
    user_id: str = ""
    user_email: str = ""
    rule_id: str = ""
    rule_severity: list[str] = field(default_factory=list)
    filter: list[str] = field(default_factory=list)
    notice_subject: str = ""
    notice_template_id: str = ""


@dataclass
class ProbingStrategy:
    timeout: int = 0
    eval_interval: int = 1
    failure: int = 1
    operator: str = ""
    field: str = ""
    expected_value: float = 0.0


@dataclass
class ProbingEndpointConfig:
    endpoint: str = ""
    strategy: ProbingStrategy = field(default_factory=ProbingStrategy)
    icmp_interval: int = 0
    icmp_count: int = 0
    http_method: str = "GET"
    http_header: dict[str, str] = field(default_factory=dict)
    http_body: str = ""


def _probing_firing_key(tenant_id: str, rule_id: str) -> str:
    return f"{tenant_id}:{PROBING_FIRING_CACHE_PREFIX}{rule_id}"


@dataclass
class ProbingRule:
    tenant_id: str = ""
    rule_id: str = ""
    rule_type: str = ""
    notice_id: str = ""
    severity: str = ""
    annotations: str = ""
    repeat_notice_interval: int = 0
    recover_notify: bool = True
    enabled: bool = True
    probing_endpoint_config: ProbingEndpointConfig = field(default_factory=ProbingEndpointConfig)

    def firing_cache_key(self) -> str:
        return _probing_firing_key(self.tenant_id, self.rule_id)


@dataclass
class ProbingEvent:
    tenant_id: str = ""
    rule_id: str = ""
    rule_type: str = ""
    fingerprint: str = ""
    severity: str = ""
    metric: dict[str, Any] = field(default_factory=dict)
    notice_id: str = ""
    annotations: str = ""
    is_recovered: bool = False
    first_trigger_time: int = 0
    first_trigger_time_format: str = ""
    repeat_notice_interval: int = 0
    last_eval_time: int = 0
    last_send_time: int = 0
    recover_time: int = 0
    recover_time_format: str = ""
    duty_user: str = ""
    recover_notify: bool = True
    probing_endpoint_config: ProbingEndpointConfig = field(default_factory=ProbingEndpointConfig)

    def firing_cache_key(self) -> str:
        return _probing_firing_key(self.tenant_id, self.rule_id)

    def probing_mapping_key(self) -> str:
        return f"{self.tenant_id}:{PROBING_VALUE_CACHE_PREFIX}{self.rule_id}"