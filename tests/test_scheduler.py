from __future__ import annotations

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from instance_checks.config import ScheduleConfig
from instance_checks.scheduler import build_trigger


def test_interval_trigger_by_default() -> None:
    trigger = build_trigger(ScheduleConfig(interval_seconds=900))
    assert isinstance(trigger, IntervalTrigger)
    assert trigger.interval.total_seconds() == 900


def test_cron_trigger_when_expression_set() -> None:
    trigger = build_trigger(ScheduleConfig(cron="15 */2 * * *"))
    assert isinstance(trigger, CronTrigger)
    fields = {f.name: str(f) for f in trigger.fields}
    assert fields["minute"] == "15"
    assert fields["hour"] == "*/2"


@pytest.mark.parametrize("expr", ["* * *", "0 0 * * * *"])
def test_invalid_cron_expression_is_rejected(expr: str) -> None:
    with pytest.raises(ValueError):
        build_trigger(ScheduleConfig(cron=expr))


def test_interval_below_minimum_is_rejected() -> None:
    with pytest.raises(ValueError):
        ScheduleConfig(interval_seconds=5)
