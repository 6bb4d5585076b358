from datetime import timedelta

from pydantic import BaseModel, Field


class RetryPolicy(BaseModel):
    """
    Exponential backoff between attempts of the same occurrence.

    The n-th retry (``retry_count == n`` after n failures) waits
    ``base_delay_ms * 2 ** (n - 1)``, capped at ``max_delay_ms``.
    """
    base_delay_ms: int = Field(5000, ge=0, description="Delay before the first retry")
    max_delay_ms: int = Field(300_000, ge=0, description="Upper bound for any single retry delay")

    def delay_ms(self, retry_count: int) -> int:
        if retry_count < 1:
            return 0
        return min(self.base_delay_ms * 2 ** (retry_count - 1), self.max_delay_ms)

    def delay(self, retry_count: int) -> timedelta:
        return timedelta(milliseconds=self.delay_ms(retry_count))
