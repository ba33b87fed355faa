"""Centralized constants for node types, job names and statuses.

Single source of truth for string identifiers shared by the executor,
the scheduler paths and the HTTP layer.
"""

from typing import FrozenSet

# =============================================================================
# JOBS
# =============================================================================

WORKFLOW_EXECUTE_EVENT = "workflow/execute"

# =============================================================================
# TRIGGER NODE TYPES
# =============================================================================

MANUAL_TRIGGER_TYPE = "manual-trigger"
WEBHOOK_TRIGGER_TYPE = "webhook-trigger"
SCHEDULED_TRIGGER_TYPE = "scheduled-time-trigger"

# Polling triggers: "new data" must be checked against a third-party API.
# Only new-http-items ships with a built-in capability; the others are
# registered by integration packages.
POLLING_TRIGGER_TYPES: FrozenSet[str] = frozenset([
    'new-http-items',
    'new-email-received',
    'new-form-submission',
    'new-row-in-google-sheet',
    'new-message-in-slack',
    'new-discord-message',
    'new-github-issue',
    'file-uploaded',
])

WORKFLOW_TRIGGER_TYPES: FrozenSet[str] = frozenset([
    MANUAL_TRIGGER_TYPE,
    WEBHOOK_TRIGGER_TYPE,
    SCHEDULED_TRIGGER_TYPE,
]) | POLLING_TRIGGER_TYPES

# =============================================================================
# NODE KINDS (Capability.kind)
# =============================================================================

KIND_TRIGGER = "trigger"
KIND_ACTION = "action"
KIND_SCHEDULED_TRIGGER = "scheduled_trigger"
KIND_POLLING_TRIGGER = "polling_trigger"

NODE_KINDS: FrozenSet[str] = frozenset([
    KIND_TRIGGER,
    KIND_ACTION,
    KIND_SCHEDULED_TRIGGER,
    KIND_POLLING_TRIGGER,
])

# =============================================================================
# USAGE METRICS
# =============================================================================

METRIC_EXECUTIONS = "executions"
METRIC_CREDITS = "credits"

USAGE_METRICS: FrozenSet[str] = frozenset([METRIC_EXECUTIONS, METRIC_CREDITS])

DEFAULT_PLAN_ID = "personal"

# =============================================================================
# DURABLE STEP NAMES (controller checkpoints)
# =============================================================================

STEP_CREATE_RECORD = "create-execution-record"
STEP_EXECUTE = "execute-workflow"
STEP_SAVE_RESULTS = "save-execution-results"
STEP_INCREMENT_USAGE = "increment-usage"

CONTROLLER_STEPS = (
    STEP_CREATE_RECORD,
    STEP_EXECUTE,
    STEP_SAVE_RESULTS,
    STEP_INCREMENT_USAGE,
)
