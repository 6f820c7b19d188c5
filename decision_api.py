import logging
import os
import signal
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import psutil
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ValidationError

from data_extractor import DataExtractor
from engine_errors import JourneyEngineError, JourneyStructureError
from engine_logging import configure_logging
from journey_loader import LoadedJourney, parse_journey
from journey_models import ProfileConfig, StepResponse
from profile_distributor import ProfileDistributor
from virtual_user import VirtualUser

# ------------------------------------------------------
# Logging in UTC
# ------------------------------------------------------
logging.Formatter.converter = time.gmtime

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format='%(asctime)sZ - %(levelname)s - %(name)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("journey_decision_api")

app = FastAPI(title="Journey decision API")

# ------------------------------------------------------
# Global Runtime State
# ------------------------------------------------------
current_settings = {
    'app_status': 'initializing',  # 'initializing' | 'ready' | 'error'
}

runtime_lock = threading.Lock()
loaded_journey = None      # type: Optional[LoadedJourney]
distributor = None         # type: Optional[ProfileDistributor]
environment_namespace = {}  # type: Dict[str, Any]
virtual_users = {}         # type: Dict[str, VirtualUser]
extractor = DataExtractor()

counters = {
    'users_created': 0,
    'users_finished': 0,
    'steps_processed': 0,
    'extraction_errors': 0,
}


class LoadRequest(BaseModel):
    journey: Dict[str, Any]
    profiles: Optional[Dict[str, Any]] = None
    seed: Optional[int] = None
    environment: Optional[Dict[str, Any]] = None
    data_base_path: str = "."
    debug: bool = False


class ValidateRequest(BaseModel):
    journey: Dict[str, Any]


def _validation_detail(ve: ValidationError):
    return ve.errors(include_url=False, include_context=False)


def _dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def _require_journey() -> LoadedJourney:
    if loaded_journey is None:
        raise HTTPException(status_code=409, detail="No journey loaded; POST /api/load first")
    return loaded_journey


def _get_user(user_id: str) -> VirtualUser:
    with runtime_lock:
        user = virtual_users.get(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail=f"Unknown virtual user '{user_id}'")
    return user


def _check_step(user: VirtualUser, step_id: str):
    if user.engine.get_step(step_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown step '{step_id}'")
    if not user.should_execute(step_id):
        raise HTTPException(
            status_code=409,
            detail={"message": f"Step '{step_id}' should not execute now", "nextStepId": user.next_step_id},
        )


def _reset_users():
    with runtime_lock:
        virtual_users.clear()
        for key in counters:
            counters[key] = 0

# ---------------------------------------------------------------------
# FASTAPI ENDPOINTS
# ---------------------------------------------------------------------
@app.get('/api/health')
async def health_check():
    """Basic health check endpoint."""
    return JSONResponse({
        "status": "healthy",
        "app_status": current_settings['app_status'],
        "journey": loaded_journey.journey.id if loaded_journey else None,
    })


@app.post('/api/load')
async def load_journey(request: LoadRequest):
    """
    Loads a journey (and optionally a profile document) for the decision
    endpoints. Replaces any previous journey and drops its virtual users.
    """
    global loaded_journey, distributor, environment_namespace

    configure_logging(request.debug)
    try:
        journey = parse_journey(request.journey, environment=request.environment)
        new_distributor = None
        if request.profiles is not None:
            new_distributor = ProfileDistributor(
                ProfileConfig.model_validate(request.profiles),
                base_path=Path(request.data_base_path),
                seed=request.seed,
            )
            new_distributor.load_data()
    except ValidationError as ve:
        logger.error(f"Load request validation failed: {ve}")
        current_settings['app_status'] = 'error'
        raise HTTPException(status_code=400, detail=_validation_detail(ve))
    except JourneyStructureError as e:
        logger.error(f"Journey rejected: {e}")
        current_settings['app_status'] = 'error'
        raise HTTPException(status_code=400, detail={
            "message": str(e),
            "issues": [_dump(issue) for issue in e.issues],
        })
    except JourneyEngineError as e:
        logger.error(f"Load failed: {e}")
        current_settings['app_status'] = 'error'
        raise HTTPException(status_code=400, detail=str(e))

    _reset_users()
    loaded_journey = journey
    distributor = new_distributor
    environment_namespace = dict(request.environment or {})
    current_settings['app_status'] = 'ready'
    logger.info(f"Journey '{journey.journey.id}' loaded" + (" with profiles" if distributor else ""))

    return JSONResponse({
        "message": f"Journey '{journey.journey.id}' loaded",
        "steps": journey.engine.step_ids,
        "issues": [_dump(issue) for issue in journey.issues],
        "targetDistribution": distributor.get_target_distribution() if distributor else None,
    })


@app.post('/api/journey/validate')
async def validate_journey(request: ValidateRequest):
    """Validates a journey without storing it."""
    try:
        journey = parse_journey(request.journey)
    except ValidationError as ve:
        return JSONResponse({"valid": False, "errors": _validation_detail(ve), "issues": []})
    except JourneyStructureError as e:
        return JSONResponse({"valid": False, "errors": [], "issues": [_dump(issue) for issue in e.issues]})
    return JSONResponse({"valid": True, "errors": [], "issues": [_dump(issue) for issue in journey.issues]})


@app.get('/api/journey/paths')
async def journey_paths():
    journey = _require_journey()
    return JSONResponse({"paths": [_dump(path) for path in journey.engine.enumerate_paths()]})


@app.post('/api/users')
async def create_user():
    """Starts a virtual user: draws its profile and returns the first step to run."""
    journey = _require_journey()
    user = VirtualUser(journey.engine, distributor, extractor, environment_namespace)
    with runtime_lock:
        virtual_users[user.id] = user
        counters['users_created'] += 1
    return JSONResponse({
        "userId": user.id,
        "user": _dump(user.user) if user.user else None,
        "nextStepId": user.next_step_id,
    })


@app.get('/api/users/{user_id}/steps/{step_id}/request')
async def step_request(user_id: str, step_id: str):
    user = _get_user(user_id)
    _check_step(user, step_id)
    return JSONResponse(_dump(user.prepare_request(step_id)))


@app.post('/api/users/{user_id}/steps/{step_id}/response')
async def step_response(user_id: str, step_id: str, response: StepResponse):
    """Feeds a step response back and returns the next-step decision."""
    user = _get_user(user_id)
    _check_step(user, step_id)
    outcome = user.handle_response(step_id, response)
    with runtime_lock:
        counters['steps_processed'] += 1
        counters['extraction_errors'] += len(outcome.errors)
        if user.finished:
            counters['users_finished'] += 1
    body = _dump(outcome)
    body["finished"] = user.finished
    return JSONResponse(body)


@app.delete('/api/users/{user_id}')
async def delete_user(user_id: str):
    user = _get_user(user_id)
    with runtime_lock:
        virtual_users.pop(user_id, None)
    return JSONResponse(_dump(user.summary()))


@app.get('/api/stats')
async def distribution_stats():
    if distributor is None:
        return JSONResponse({"stats": None, "target": None, "drift": None})
    return JSONResponse({
        "stats": _dump(distributor.get_stats()),
        "target": distributor.get_target_distribution(),
        "drift": distributor.get_distribution_drift(),
    })


@app.get('/api/metrics')
async def api_metrics():
    """
    Return combined process + decision engine stats.
    Engine counters are placed under the top-level 'metrics' key.
    """
    cpu_percent = psutil.cpu_percent(interval=0.1)
    mem = psutil.virtual_memory()
    net_io = psutil.net_io_counters()
    process = psutil.Process()

    with runtime_lock:
        active_users = len(virtual_users)
        snapshot = dict(counters)

    resp_body = {
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "app_status": current_settings['app_status'],
        "network": {
            "bytes_sent": net_io.bytes_sent,
            "bytes_recv": net_io.bytes_recv,
        },
        "system": {
            "cpu_percent": round(cpu_percent, 1),
            "memory_percent": round(mem.percent, 1),
            "memory_available_mb": round(mem.available / (1024 * 1024), 2),
            "process_rss_mb": round(process.memory_info().rss / (1024 * 1024), 2),
        },
        "metrics": {
            "active_virtual_users": active_users,
            **snapshot,
        }
    }
    return JSONResponse(resp_body)


@app.get('/metrics')
async def metrics_prometheus():
    """Prometheus /metrics endpoint with process + decision engine stats."""
    cpu_percent = psutil.cpu_percent(interval=0.1)
    mem = psutil.virtual_memory()

    with runtime_lock:
        active_users = len(virtual_users)
        snapshot = dict(counters)

    status_map = {
        "initializing": 0,
        "ready": 1,
        "error": 3
    }
    app_status_val = status_map.get(current_settings['app_status'], 3)

    lines = [
        "# HELP host_cpu_percent Host CPU usage percent.",
        "# TYPE host_cpu_percent gauge",
        f"host_cpu_percent {round(cpu_percent, 1)}",
        "# HELP host_memory_percent Host memory usage percent.",
        "# TYPE host_memory_percent gauge",
        f"host_memory_percent {round(mem.percent, 1)}",
        "# HELP journey_active_virtual_users Virtual users currently tracked.",
        "# TYPE journey_active_virtual_users gauge",
        f"journey_active_virtual_users {active_users}",
        "# HELP journey_users_created_total Virtual users started.",
        "# TYPE journey_users_created_total counter",
        f"journey_users_created_total {snapshot['users_created']}",
        "# HELP journey_users_finished_total Virtual users that reached the end of the journey.",
        "# TYPE journey_users_finished_total counter",
        f"journey_users_finished_total {snapshot['users_finished']}",
        "# HELP journey_steps_processed_total Step responses evaluated.",
        "# TYPE journey_steps_processed_total counter",
        f"journey_steps_processed_total {snapshot['steps_processed']}",
        "# HELP journey_extraction_errors_total Extractions that failed without a default.",
        "# TYPE journey_extraction_errors_total counter",
        f"journey_extraction_errors_total {snapshot['extraction_errors']}",
        "# HELP app_status Application status (initializing=0, ready=1, error=3).",
        "# TYPE app_status gauge",
        f"app_status {app_status_val}",
    ]
    return Response("\n".join(lines) + "\n", media_type="text/plain; version=0.0.4")

# ---------------------------------------------------------------------
# SIGNAL HANDLER (SIGTERM)
# ---------------------------------------------------------------------
def handle_signal(signum, frame):
    signal_name = signal.Signals(signum).name
    logger.info(f"Received signal {signal_name} ({signum}); shutting down.")
    os._exit(0)


def serve(host: str = '0.0.0.0', port: int = 8080, log_level: str = "info"):
    import uvicorn

    signal.signal(signal.SIGTERM, handle_signal)
    logger.info("Starting journey decision API server...")
    uvicorn.run(app, host=host, port=port, log_level=log_level.lower())

# ---------------------------------------------------------------------
# MAIN ENTRY POINT (journey-engine serve is the usual way in)
# ---------------------------------------------------------------------
if __name__ == '__main__':
    serve(port=int(os.environ.get("PORT", "8080")), log_level=os.environ.get("LOG_LEVEL", "info"))
