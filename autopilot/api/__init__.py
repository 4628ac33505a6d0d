"""HTTP layer over the task orchestrator."""
