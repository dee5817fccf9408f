"""Decide whether a notification should be suppressed."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from opsmonitor.models import EffectiveTime


@dataclass
class MuteParams:
    effective_time: EffectiveTime = field(default_factory=EffectiveTime)
    recover_notify: bool = True
    is_recovered: bool = False


def in_effective_time(params: MuteParams, now: datetime | None = None) -> bool:
    """Return True when ``now`` lies outside the configured effective window."""
    week = params.effective_time.week
    if not week:
        return False
    now = now or datetime.now()
    if now.strftime("%A") not in week:
        return True
    seconds = now.hour * 3600 + now.minute * 60 + now.second
    return not (params.effective_time.start_time <= seconds <= params.effective_time.end_time)


def recover_notify(params: MuteParams) -> bool:
    """Return True when a recovery must be muted because recovery notices are off."""
    return params.is_recovered and not params.recover_notify


def is_muted(params: MuteParams, now: datetime | None = None) -> bool:
    return in_effective_time(params, now) or recover_notify(params)