# virtual_user.py
"""
Per-virtual-user driver and a concurrent simulation harness.

A VirtualUser draws its UserContext once, owns a private FlowState and turns
step templates into RenderedRequests. The host (a load engine, the decision
API or `simulate_users`) performs the request and hands the response back.
"""

import asyncio
import random
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import Field

from data_extractor import DataExtractor
from engine_errors import JourneyEngineError
from engine_logging import get_logger
from flow_engine import FlowEngine
from interpolation import (
    RenderedRequest,
    build_interpolation_context,
    build_user_variables,
    render_request,
)
from journey_models import RuntimeModel, StepOutcome, StepResponse, UserContext
from profile_distributor import ProfileDistributor

logger = get_logger("vu")

__all__ = ["VirtualUser", "UserRunSummary", "simulate_users", "Responder"]

Responder = Callable[[RenderedRequest], Awaitable[StepResponse]]


class UserRunSummary(RuntimeModel):
    user_id: str
    profile_name: Optional[str] = None
    path: List[str] = Field(default_factory=list)
    extraction_errors: int = 0
    completed: bool = False
    steps_executed: int = 0


class VirtualUser:

    def __init__(
        self,
        engine: FlowEngine,
        distributor: Optional[ProfileDistributor] = None,
        extractor: Optional[DataExtractor] = None,
        environment: Optional[Dict[str, Any]] = None,
        base_url: Optional[str] = None,
        user_id: Optional[str] = None,
    ):
        self.id = user_id or uuid.uuid4().hex
        self.engine = engine
        self.extractor = extractor or DataExtractor()
        self.base_url = base_url
        self.user: Optional[UserContext] = distributor.get_next_user() if distributor else None
        self.state = engine.new_state(
            build_user_variables(self.user, engine.journey.variables, environment)
        )
        self.extraction_errors: List[str] = []
        logger.debug(f"Virtual user {self.id} started (profile: {self.profile_name})")

    @property
    def profile_name(self) -> Optional[str]:
        return self.user.profile_name if self.user else None

    @property
    def next_step_id(self) -> Optional[str]:
        return self.state.next_step_id

    @property
    def finished(self) -> bool:
        """True once a step has run and the journey offers no further step."""
        return bool(self.state.executed_steps) and self.state.next_step_id is None

    @property
    def path(self) -> List[str]:
        return list(self.state.executed_steps)

    def should_execute(self, step_id: str) -> bool:
        return self.engine.should_execute_step(step_id, self.state)

    def prepare_request(self, step_id: str) -> RenderedRequest:
        step = self.engine.get_step(step_id)
        if step is None:
            raise JourneyEngineError(f"Unknown step '{step_id}'")
        context = build_interpolation_context(self.state.variables)
        return render_request(step, self.engine.journey, context, base_url=self.base_url)

    def handle_response(self, step_id: str, response: StepResponse) -> StepOutcome:
        step = self.engine.get_step(step_id)
        if step is None:
            raise JourneyEngineError(f"Unknown step '{step_id}'")
        outcome = self.engine.process_response(step, response, self.state, self.extractor)
        self.extraction_errors.extend(outcome.errors)
        return outcome

    def summary(self) -> UserRunSummary:
        return UserRunSummary(
            user_id=self.id,
            profile_name=self.profile_name,
            path=self.path,
            extraction_errors=len(self.extraction_errors),
            completed=self.finished,
            steps_executed=len(self.state.executed_steps),
        )


async def _run_user(
    user: VirtualUser,
    responder: Responder,
    max_steps: int,
    think_time_scale: float,
    rng: random.Random,
) -> UserRunSummary:
    step_id = user.next_step_id
    while step_id is not None and len(user.state.executed_steps) < max_steps:
        if not user.should_execute(step_id):
            logger.debug(f"Virtual user {user.id} stops: step '{step_id}' already executed")
            break
        request = user.prepare_request(step_id)
        response = await responder(request)
        outcome = user.handle_response(step_id, response)

        if think_time_scale > 0:
            think_time = user.engine.get_think_time(user.engine.get_step(step_id), rng) * think_time_scale
            if think_time > 0:
                await asyncio.sleep(think_time)
        step_id = outcome.next_step_id

    if step_id is not None and len(user.state.executed_steps) >= max_steps:
        logger.warning(f"Virtual user {user.id} hit the step limit ({max_steps}) at step '{step_id}'")
    return user.summary()


async def simulate_users(
    engine: FlowEngine,
    distributor: Optional[ProfileDistributor],
    responder: Responder,
    users: int = 1,
    extractor: Optional[DataExtractor] = None,
    environment: Optional[Dict[str, Any]] = None,
    base_url: Optional[str] = None,
    max_steps: int = 100,
    think_time_scale: float = 0.0,
    seed: Optional[int] = None,
) -> List[UserRunSummary]:
    """
    Runs `users` virtual users concurrently as asyncio tasks. `responder`
    stands in for the load engine: it receives each RenderedRequest and
    returns the StepResponse to feed back.
    """
    extractor = extractor or DataExtractor()
    rng = random.Random(seed)
    virtual_users = [
        VirtualUser(engine, distributor, extractor, environment, base_url, user_id=f"vu-{index + 1}")
        for index in range(users)
    ]
    logger.info(f"Simulating {users} virtual user(s) through journey '{engine.journey.id}'")
    summaries = await asyncio.gather(
        *(_run_user(vu, responder, max_steps, think_time_scale, rng) for vu in virtual_users)
    )
    completed = sum(1 for s in summaries if s.completed)
    logger.info(f"Simulation finished: {completed}/{users} user(s) reached the end of the journey")
    return list(summaries)
