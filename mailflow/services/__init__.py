"""Automation engine services."""

from .template import render, render_value, resolve_path, MISSING_PATH_POLICY
from .trigger_matcher import CompiledTrigger, TriggerMatcher, should_trigger
from .condition_evaluator import evaluate_conditions, validate_conditions
from .action_executor import ActionPipelineExecutor
from .email_poller import EmailPoller
from .scheduler import Scheduler
from .automation_service import AutomationService, get_automation_service

__all__ = [
    "render",
    "render_value",
    "resolve_path",
    "MISSING_PATH_POLICY",
    "CompiledTrigger",
    "TriggerMatcher",
    "should_trigger",
    "evaluate_conditions",
    "validate_conditions",
    "ActionPipelineExecutor",
    "EmailPoller",
    "Scheduler",
    "AutomationService",
    "get_automation_service",
]
