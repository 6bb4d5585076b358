from .protocol import JobExecutor
from .simulated import SimulatedJobExecutor
from .http import HttpJobExecutor, HttpCallPayload
from .registry import JobExecutorRegistry

__all__ = ["JobExecutor", "SimulatedJobExecutor", "HttpJobExecutor", "HttpCallPayload", "JobExecutorRegistry"]
