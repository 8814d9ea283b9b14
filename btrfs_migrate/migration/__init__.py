"""Migration Orchestrator and the stages it composes."""
