# flow_engine.py
"""
Flow state machine for journeys.

After each step response the engine decides which step runs next. The
decision is an ordered pipeline of resolvers; the first one that produces a
result wins:

    BRANCH       first branch (in declared order) whose condition is true
    ON_SUCCESS   2xx response and the step declares onSuccess
    ON_FAILURE   non-2xx response and the step declares onFailure
    SEQUENTIAL   the step declared after this one (END when there is none)

FlowEngine only holds the immutable journey after construction. All run-time
progress lives in a FlowState owned by exactly one virtual user and passed in
explicitly.
"""

import random
import re
from typing import Any, Callable, Dict, List, Optional

from data_extractor import DataExtractor, lookup_header, parse_body
from engine_errors import JsonPathError
from engine_logging import get_logger
from journey_models import (
    Condition,
    FlowState,
    Journey,
    JourneyPath,
    Step,
    StepOutcome,
    StepResponse,
    ThinkTimeRange,
    TransitionResult,
    TransitionSource,
    ValidationIssue,
)
from json_path import compile_path, is_number, json_equals
from json_path import evaluate as evaluate_json_path

logger = get_logger("flow")

__all__ = ["FlowEngine"]

# --- Sentinel for a condition value that could not be resolved ---
_ABSENT = object()

Resolver = Callable[[Step, StepResponse, FlowState], Optional[TransitionResult]]


class FlowEngine:

    def __init__(self, journey: Journey):
        self.journey = journey
        self._steps: Dict[str, Step] = {}
        self._order: List[str] = []
        for step in journey.steps:
            self._steps[step.id] = step
            self._order.append(step.id)
        self._resolvers: List[Resolver] = [
            self._resolve_branches,
            self._resolve_outcome,
            self._resolve_sequential,
        ]

    # ---------------------------
    # Lookups
    # ---------------------------

    @property
    def step_ids(self) -> List[str]:
        return list(self._order)

    def get_step(self, step_id: str) -> Optional[Step]:
        return self._steps.get(step_id)

    def get_first_step(self) -> Step:
        return self._steps[self._order[0]]

    def get_next_sequential_step(self, step_id: str) -> Optional[Step]:
        try:
            index = self._order.index(step_id)
        except ValueError:
            return None
        if index >= len(self._order) - 1:
            return None
        return self._steps[self._order[index + 1]]

    def new_state(self, variables: Optional[Dict[str, Any]] = None) -> FlowState:
        """Fresh per-user state positioned at the first step."""
        first_id = self._order[0]
        return FlowState(
            current_step_id=first_id,
            variables=dict(variables or {}),
            executed_steps=[],
            next_step_id=first_id,
        )

    # ---------------------------
    # Transitions
    # ---------------------------

    def evaluate_transition(self, step: Step, response: StepResponse, state: FlowState) -> TransitionResult:
        for resolver in self._resolvers:
            result = resolver(step, response, state)
            if result is not None:
                logger.debug(
                    f"Step {step.label()} -> {result.next_step_id!r} via {result.source.value}"
                    + (f" ({result.matched_condition.describe()})" if result.matched_condition else "")
                )
                return result
        # The sequential resolver always answers
        raise RuntimeError(f"No transition resolved for step '{step.id}'")

    def _resolve_branches(self, step: Step, response: StepResponse, state: FlowState) -> Optional[TransitionResult]:
        for branch in step.branches:
            if self.evaluate_condition(branch.condition, response, state):
                return TransitionResult(
                    matched=True,
                    next_step_id=branch.goto,
                    matched_condition=branch.condition,
                    source=TransitionSource.BRANCH,
                )
        return None

    def _resolve_outcome(self, step: Step, response: StepResponse, state: FlowState) -> Optional[TransitionResult]:
        if response.is_success and step.on_success:
            return TransitionResult(matched=True, next_step_id=step.on_success, source=TransitionSource.ON_SUCCESS)
        if not response.is_success and step.on_failure:
            return TransitionResult(matched=True, next_step_id=step.on_failure, source=TransitionSource.ON_FAILURE)
        return None

    def _resolve_sequential(self, step: Step, response: StepResponse, state: FlowState) -> Optional[TransitionResult]:
        next_step = self.get_next_sequential_step(step.id)
        if next_step is None:
            return TransitionResult(matched=False, next_step_id=None, source=TransitionSource.END)
        return TransitionResult(matched=False, next_step_id=next_step.id, source=TransitionSource.SEQUENTIAL)

    # ---------------------------
    # Conditions
    # ---------------------------

    def evaluate_condition(self, condition: Condition, response: StepResponse, state: FlowState) -> bool:
        """
        Evaluates one branch condition. Never raises: anything that cannot be
        evaluated (missing value, wrong type, bad pattern) is simply False.
        """
        if condition.field is not None:
            try:
                compile_path(condition.field)
            except JsonPathError as e:
                logger.warning(f"Invalid JSONPath '{condition.field}' in condition: {e}")
                return False
            value = self._field_value(response.body, condition.field)
        elif condition.status is not None:
            return response.status_code == condition.status
        elif condition.header is not None:
            value = lookup_header(response.headers, condition.header)
            if value is None:
                value = _ABSENT
        else:
            logger.debug("Condition has no field, status or header; evaluating to False")
            return False

        operator = condition.operator()
        if operator is None:
            logger.warning(f"Condition on {condition.describe()} has no operator; evaluating to False")
            return False
        try:
            return self._apply_operator(operator[0], operator[1], value)
        except Exception as e:
            logger.warning(f"Error evaluating condition {condition.describe()}: {e}")
            return False

    @staticmethod
    def _field_value(body: Any, path: str) -> Any:
        if body is None:
            return _ABSENT
        try:
            document = parse_body(body)
        except ValueError:
            return _ABSENT
        matches = evaluate_json_path(path, document)
        if not matches:
            return _ABSENT
        return matches[0] if len(matches) == 1 else matches

    @staticmethod
    def _apply_operator(name: str, operand: Any, value: Any) -> bool:
        if name == "eq":
            return value is not _ABSENT and json_equals(value, operand)
        if name == "ne":
            return value is _ABSENT or not json_equals(value, operand)
        if name in ("gt", "gte", "lt", "lte"):
            if not is_number(value) or not is_number(operand):
                return False
            if name == "gt":
                return value > operand
            if name == "gte":
                return value >= operand
            if name == "lt":
                return value < operand
            return value <= operand
        if name == "contains":
            return isinstance(value, str) and operand is not None and operand in value
        if name == "matches":
            if not isinstance(value, str) or operand is None:
                return False
            try:
                return re.search(operand, value) is not None
            except re.error as e:
                logger.warning(f"Invalid regex pattern '{operand}' in condition: {e}")
                return False
        if name == "exists":
            present = value is not _ABSENT and value is not None
            return present if operand is not False else not present
        if name == "in":
            if value is _ABSENT or not isinstance(operand, list):
                return False
            return any(json_equals(value, item) for item in operand)
        logger.warning(f"Unknown condition operator '{name}'")
        return False

    # ---------------------------
    # Structure
    # ---------------------------

    def _edges(self, step: Step) -> List[str]:
        """Possible next step ids in first-seen order: branches, onSuccess, onFailure, sequential."""
        targets: List[str] = [branch.goto for branch in step.branches]
        if step.on_success:
            targets.append(step.on_success)
        if step.on_failure:
            targets.append(step.on_failure)
        next_step = self.get_next_sequential_step(step.id)
        if next_step is not None:
            targets.append(next_step.id)
        return list(dict.fromkeys(targets))

    def validate(self) -> List[ValidationIssue]:
        issues: List[ValidationIssue] = []
        for step in self.journey.steps:
            for branch in step.branches:
                if branch.goto not in self._steps:
                    issues.append(ValidationIssue(type='error', step_id=step.id,
                                                  message=f"Branch target '{branch.goto}' does not exist"))
            if step.on_success and step.on_success not in self._steps:
                issues.append(ValidationIssue(type='error', step_id=step.id,
                                              message=f"onSuccess target '{step.on_success}' does not exist"))
            if step.on_failure and step.on_failure not in self._steps:
                issues.append(ValidationIssue(type='error', step_id=step.id,
                                              message=f"onFailure target '{step.on_failure}' does not exist"))

        reachable = set()
        stack = [self._order[0]]
        while stack:
            step_id = stack.pop()
            if step_id in reachable or step_id not in self._steps:
                continue
            reachable.add(step_id)
            stack.extend(self._edges(self._steps[step_id]))

        for step_id in self._order:
            if step_id not in reachable:
                issues.append(ValidationIssue(type='warning', step_id=step_id,
                                              message=f"Step '{step_id}' is unreachable"))

        error_count = sum(1 for issue in issues if issue.type == 'error')
        logger.debug(f"Validated journey '{self.journey.id}': {error_count} error(s), {len(issues) - error_count} warning(s)")
        return issues

    def enumerate_paths(self) -> List[JourneyPath]:
        """
        Every path from the first step, following all possible edges. A step
        that is already on the current path closes it with has_cycle=True, so
        enumeration terminates on cyclic journeys. Dangling targets are skipped.
        """
        paths: List[JourneyPath] = []
        on_stack = set()

        def traverse(step_id: str, current: List[str]):
            current = current + [step_id]
            if step_id in on_stack:
                paths.append(JourneyPath(steps=current, is_complete=False, has_cycle=True))
                return
            on_stack.add(step_id)
            next_ids = [target for target in self._edges(self._steps[step_id]) if target in self._steps]
            if not next_ids:
                paths.append(JourneyPath(steps=current, is_complete=True, has_cycle=False))
            for next_id in next_ids:
                traverse(next_id, current)
            on_stack.discard(step_id)

        traverse(self._order[0], [])
        logger.debug(f"Enumerated {len(paths)} path(s) for journey '{self.journey.id}'")
        return paths

    # ---------------------------
    # Per-user execution
    # ---------------------------

    def should_execute_step(self, step_id: str, state: FlowState) -> bool:
        """
        Reads only `step_id`, `state` and the journey's step order. Before any
        step has run the first step is always allowed; otherwise the step must
        be the unexecuted `next_step_id`.
        """
        if not state.executed_steps and step_id == self._order[0]:
            return True
        if step_id in state.executed_steps:
            return False
        return step_id == state.next_step_id

    def process_response(
        self,
        step: Step,
        response: StepResponse,
        state: FlowState,
        extractor: DataExtractor,
    ) -> StepOutcome:
        """
        Runs the step's extractions, binds the results into `state.variables`,
        resolves the transition against the updated state and records the step
        as executed. Extraction failures are reported in the outcome.
        """
        extracted = extractor.extract_all(step.extract, response)
        state.variables.update(extracted.variables)
        transition = self.evaluate_transition(step, response, state)
        state.executed_steps.append(step.id)
        state.current_step_id = step.id
        state.next_step_id = transition.next_step_id
        if extracted.errors:
            logger.warning(f"Step {step.label()} finished with {len(extracted.errors)} extraction error(s)")
        return StepOutcome(
            step_id=step.id,
            next_step_id=transition.next_step_id,
            variables=extracted.variables,
            errors=extracted.errors,
            transition=transition,
        )

    def get_think_time(self, step: Step, rng: Optional[random.Random] = None) -> float:
        """
        Think time in seconds for `step`, falling back to the journey default.
        A {min, max} range draws uniformly: whole seconds when both bounds are
        whole numbers, otherwise a float.
        """
        think_time = step.think_time if step.think_time is not None else self.journey.defaults.think_time
        if think_time is None:
            return 0.0
        if isinstance(think_time, ThinkTimeRange):
            rng = rng or random
            if float(think_time.min).is_integer() and float(think_time.max).is_integer():
                return float(rng.randint(int(think_time.min), int(think_time.max)))
            return rng.uniform(think_time.min, think_time.max)
        return float(think_time)
