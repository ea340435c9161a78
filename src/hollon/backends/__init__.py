from hollon.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    BrainProvider,
    CostEstimate,
    ExecutionRequest,
    ExecutionResult,
)
from hollon.backends.claude import ClaudeCodeBackend
from hollon.backends.cost import CostCalculator
from hollon.backends.parser import ParsedResponse, ResponseParser
from hollon.backends.process import ProcessOutcome, ProcessRunner

__all__ = [
    "BackendExecutionError",
    "BackendProcessError",
    "BrainProvider",
    "ClaudeCodeBackend",
    "CostCalculator",
    "CostEstimate",
    "ExecutionRequest",
    "ExecutionResult",
    "ParsedResponse",
    "ProcessOutcome",
    "ProcessRunner",
    "ResponseParser",
]
