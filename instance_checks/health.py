from __future__ import annotations

from dataclasses import dataclass

import structlog

from instance_checks.models import Instance, InstanceStore


logger = structlog.get_logger(__name__)

DEFAULT_BAN_THRESHOLD = 5
DEFAULT_BAN_REASON = "Instance failed 5 checks in a row"


@dataclass(frozen=True)
class HealthState:
    failed_checks: int
    banned: bool
    ban_reason: str | None = None
    newly_banned: bool = False


def next_health_state(
    failed_checks: int,
    *,
    observed_ok: bool,
    threshold: int = DEFAULT_BAN_THRESHOLD,
    ban_reason: str = DEFAULT_BAN_REASON,
) -> HealthState:
    """Consecutive-failure bookkeeping for one instance.

    The prospective count is compared against the threshold: the failure that
    would bring the run to `threshold` bans the instance and the stored
    counter keeps its previous value (4 with the default threshold).
    """
    threshold = max(1, int(threshold))
    failed_checks = max(0, int(failed_checks))

    if observed_ok:
        return HealthState(failed_checks=0, banned=False)

    if failed_checks + 1 >= threshold:
        return HealthState(failed_checks=failed_checks, banned=True, ban_reason=ban_reason, newly_banned=True)
    return HealthState(failed_checks=failed_checks + 1, banned=False)


class HealthTracker:
    """Owns the failure counter and ban flag of each instance."""

    def __init__(
        self,
        store: InstanceStore,
        *,
        threshold: int = DEFAULT_BAN_THRESHOLD,
        ban_reason: str = DEFAULT_BAN_REASON,
    ) -> None:
        if int(threshold) < 1:
            raise ValueError("threshold must be >= 1")
        self.store = store
        self.threshold = int(threshold)
        self.ban_reason = ban_reason

    def record_success(self, instance: Instance) -> HealthState:
        state = next_health_state(
            instance.failed_checks,
            observed_ok=True,
            threshold=self.threshold,
            ban_reason=self.ban_reason,
        )
        self.store.set_failed_checks(instance.id, state.failed_checks)
        return state

    def record_failure(self, instance: Instance) -> HealthState:
        state = next_health_state(
            instance.failed_checks,
            observed_ok=False,
            threshold=self.threshold,
            ban_reason=self.ban_reason,
        )
        if state.banned:
            self.store.ban_instance(instance.id, self.ban_reason)
            logger.warning(
                "Instance banned",
                uri=instance.uri,
                failed_checks=state.failed_checks,
                reason=self.ban_reason,
            )
        else:
            self.store.set_failed_checks(instance.id, state.failed_checks)
        return state
