"""Event type constants for Realm agent runs."""

# Run lifecycle events
RUN_STARTED = "run_started"
RUN_COMPLETED = "run_completed"
RUN_FAILED = "run_failed"
RUN_EXHAUSTED = "run_exhausted"

# Cycle events
CYCLE_STARTED = "cycle_started"
CYCLE_FAILED = "cycle_failed"
MODEL_INVOCATION = "model_invocation"
MODEL_RETRYING = "model_retrying"
MODEL_TEXT = "model_text"
NUDGE_APPENDED = "nudge_appended"

# Tool events
TOOL_CALL_STARTED = "tool_call_started"
TOOL_CALL_COMPLETED = "tool_call_completed"
COMPLETION_BLOCKED = "completion_blocked"

# Compression events
COMPRESSION_APPLIED = "compression_applied"
COMPRESSION_SKIPPED = "compression_skipped"
