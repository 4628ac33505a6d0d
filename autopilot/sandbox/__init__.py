"""Sandbox module for bounded subprocess execution."""

from autopilot.sandbox.executor import ExecutionResult, ExecutorConfig, LocalExecutor

__all__ = ["ExecutionResult", "ExecutorConfig", "LocalExecutor"]
