from datetime import datetime, timedelta
from typing import Callable

from autoflow.schemas.automation import Rule, utcnow
from autoflow.services.stores import ExecutionStore, utc_day


class RuleRateLimiter:
    """Per-rule daily quota and cooldown check.

    Best effort: concurrent executions of one rule can race past the quota
    by a small margin since nothing is locked between count and create.
    """

    def __init__(self, execution_store: ExecutionStore, *, clock: Callable[[], datetime] = utcnow):
        self.execution_store = execution_store
        self.clock = clock

    async def check(self, rule: Rule) -> str | None:
        """Returns the blocking reason, or None when the rule may execute."""
        now = self.clock()
        count = await self.execution_store.count_executions(rule.id, utc_day(now))
        if count >= rule.settings.max_executions_per_day:
            return "Rate limit exceeded"

        cooldown = rule.settings.cooldown_period
        if cooldown > 0:
            last = await self.execution_store.last_execution_at(rule.id)
            if last is not None and now - last < timedelta(minutes=cooldown):
                return "Rate limit exceeded: cooldown period active"
        return None

    async def can_execute(self, rule: Rule) -> bool:
        return await self.check(rule) is None
