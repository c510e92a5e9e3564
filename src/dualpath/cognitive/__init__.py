"""Dual-process cognitive engine.

Routes each input either to a fast, cached responder or to a deliberate
plan/execute/reflect loop, and gates every command through a sandbox.

Components:
    - ComplexityRouter: Scores inputs and picks a path against an adaptive threshold
    - FastResponder: Answers from patterns, memory recall or tool history
    - DeliberateEngine: Plan -> Execute -> Reflect with bounded retries
    - SandboxGate: Deny-list safety gate and execution record keeper
    - CognitiveEngine: The pipeline tying them together

Example:
    from dualpath.cognitive import CognitiveEngine

    engine = CognitiveEngine()
    result = await engine.process("fix the bug")
    engine.report_outcome(result.path, success=True)
"""

from .config import CognitiveConfig
from .deliberate import ComplexityAssessment, DeliberateEngine, SolveOptions, SolveResult
from .engine import CognitiveEngine, ProcessingResult
from .executor import ExecutionEngine, ExecutionResult, OutcomeStatus, StepOutcome
from .fast import FastResponder, PatternMatch
from .planner import ExecutionPlan, PlanOptions, Step, Task, TaskPlanner
from .reflection import ReflectionResult, Reflector
from .router import CognitivePath, ComplexityRouter, RoutingDecision, ThresholdAdjustment
from .sandbox import (
    ExecutionRecord,
    RecordState,
    SandboxContext,
    SandboxGate,
    SandboxOptions,
    Severity,
    ValidationResult,
)

__all__ = [
    # Main entry point
    "CognitiveEngine",
    "ProcessingResult",
    "CognitiveConfig",
    # Routing
    "ComplexityRouter",
    "CognitivePath",
    "RoutingDecision",
    "ThresholdAdjustment",
    # Fast path
    "FastResponder",
    "PatternMatch",
    # Deliberate path
    "DeliberateEngine",
    "SolveOptions",
    "SolveResult",
    "ComplexityAssessment",
    "TaskPlanner",
    "Task",
    "Step",
    "ExecutionPlan",
    "PlanOptions",
    "ExecutionEngine",
    "ExecutionResult",
    "StepOutcome",
    "OutcomeStatus",
    "Reflector",
    "ReflectionResult",
    # Sandbox
    "SandboxGate",
    "SandboxContext",
    "SandboxOptions",
    "ExecutionRecord",
    "RecordState",
    "Severity",
    "ValidationResult",
]
