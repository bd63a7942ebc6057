"""Resumable, checkpointed build relay.

This package provides:
- Relay configuration (TOML)
- A wall-clock bounded command executor
- Checkpoint archiving and artifact transport with retries
- The stage state machine and the per-invocation runner

A build that does not fit in one runner window is driven forward one
invocation at a time: each invocation restores the last checkpoint, advances
the stages, and publishes either a new checkpoint or the final artifact.
"""
