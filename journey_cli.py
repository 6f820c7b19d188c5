import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from pydantic import ValidationError

from engine_errors import JourneyEngineError, JourneyStructureError
from engine_logging import configure_logging
from journey_loader import load_journey
from journey_models import StepResponse
from profile_distributor import load_profile_distributor
from runner_config import RunnerConfig, load_runner_config
from virtual_user import simulate_users


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect, sample and serve declarative API journeys")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--config", dest="config_file", default=None, help="Project config file (JSON or YAML)")
    parser.add_argument("--env", dest="env_name", default=None, help="Environment name, resolved as <name>.env.json|yaml")
    parser.add_argument("--env-dir", dest="env_dir", default="environments", help="Directory holding environment files")
    parser.add_argument("--env-file", dest="env_file", default=None, help="Direct path to an environment file")
    sub = parser.add_subparsers(dest="command", required=True)

    validate = sub.add_parser("validate", help="Check a journey for schema and structure errors")
    validate.add_argument("journey", help="Path to a journey JSON/YAML file")

    paths = sub.add_parser("paths", help="List every path through a journey")
    paths.add_argument("journey", help="Path to a journey JSON/YAML file")

    sample = sub.add_parser("sample", help="Draw users from a profile document and show the distribution")
    sample.add_argument("profiles", help="Path to a profile JSON/YAML file")
    sample.add_argument("-n", "--count", type=int, default=10, help="Number of users to draw")
    sample.add_argument("--seed", type=int, default=None, help="Seed for reproducible draws")
    sample.add_argument("--show-users", action="store_true", help="Print every drawn user context")

    simulate = sub.add_parser("simulate", help="Dry-run virtual users through a journey with a fixed response")
    simulate.add_argument("journey", help="Path to a journey JSON/YAML file")
    simulate.add_argument("--profiles", default=None, help="Path to a profile JSON/YAML file")
    simulate.add_argument("--users", type=int, default=None, help="Number of virtual users")
    simulate.add_argument("--status", type=int, default=200, help="Status code returned for every step")
    simulate.add_argument("--body", default=None, help="JSON body returned for every step")
    simulate.add_argument("--seed", type=int, default=None, help="Seed for reproducible profile draws")

    serve = sub.add_parser("serve", help="Run the HTTP decision API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    return parser.parse_args(argv)


def _load_config(args: argparse.Namespace, journey_path: Optional[str] = None) -> RunnerConfig:
    overrides = {"execution": {"debug": True}} if args.debug else None
    return load_runner_config(
        journey_path=journey_path,
        project_config_path=args.config_file,
        environment_name=args.env_name,
        environments_dir=args.env_dir,
        environment_path=args.env_file,
        overrides=overrides,
    )


def cmd_validate(args: argparse.Namespace, config: RunnerConfig) -> int:
    try:
        loaded = load_journey(args.journey, environment=config.environment.namespace())
    except ValidationError as ve:
        print(f"Journey schema errors in {args.journey}:")
        for error in ve.errors():
            location = ".".join(str(part) for part in error["loc"])
            print(f"  - {location}: {error['msg']}")
        return 1
    except JourneyStructureError as e:
        print(str(e))
        return 1
    for issue in loaded.issues:
        print(f"  {issue.type}: [{issue.step_id}] {issue.message}")
    print(f"Journey '{loaded.journey.name}' is valid ({len(loaded.journey.steps)} steps, {len(loaded.issues)} warning(s))")
    return 0


def cmd_paths(args: argparse.Namespace, config: RunnerConfig) -> int:
    loaded = load_journey(args.journey, environment=config.environment.namespace())
    for path in loaded.engine.enumerate_paths():
        marker = "cycle" if path.has_cycle else ("complete" if path.is_complete else "open")
        print(f"[{marker}] " + " -> ".join(path.steps))
    return 0


def cmd_sample(args: argparse.Namespace, config: RunnerConfig) -> int:
    seed = args.seed if args.seed is not None else config.profiles.seed
    distributor = load_profile_distributor(args.profiles, seed=seed)
    for _ in range(args.count):
        user = distributor.get_next_user()
        if args.show_users:
            print(json.dumps(user.model_dump(mode="json", by_alias=True), default=str))
    stats = distributor.get_stats()
    target = distributor.get_target_distribution()
    print(f"Drew {stats.total_users} user(s):")
    for name, count in stats.profile_counts.items():
        print(f"  {name}: {count} ({stats.profile_percentages[name]:.1f}% actual, {target[name]:.1f}% target)")
    return 0


def cmd_simulate(args: argparse.Namespace, config: RunnerConfig) -> int:
    loaded = load_journey(args.journey, environment=config.environment.namespace())
    profiles_path = args.profiles or config.profiles.path
    seed = args.seed if args.seed is not None else config.profiles.seed
    distributor = load_profile_distributor(profiles_path, seed=seed) if profiles_path else None
    body = json.loads(args.body) if args.body else None

    async def responder(request):
        logging.getLogger("JourneyEngine.cli").info(f"{request.method} {request.url}")
        return StepResponse(status_code=args.status, headers={"content-type": "application/json"}, body=body)

    summaries = asyncio.run(simulate_users(
        loaded.engine,
        distributor,
        responder,
        users=args.users or config.execution.virtual_users,
        environment=config.environment.namespace(),
        base_url=config.environment.target.base_url,
        max_steps=config.execution.max_steps,
        think_time_scale=config.execution.think_time_scale,
        seed=seed,
    ))
    for summary in summaries:
        state = "completed" if summary.completed else "stopped"
        print(f"{summary.user_id} ({summary.profile_name or '-'}): {state} after {' -> '.join(summary.path)}"
              f" [{summary.extraction_errors} extraction error(s)]")
    return 0


def cmd_serve(args: argparse.Namespace, config: RunnerConfig) -> int:
    from decision_api import serve

    serve(
        host=args.host or config.api.host,
        port=args.port or config.api.port,
        log_level=config.api.log_level,
    )
    return 0


COMMANDS = {
    "validate": cmd_validate,
    "paths": cmd_paths,
    "sample": cmd_sample,
    "simulate": cmd_simulate,
    "serve": cmd_serve,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    journey_path = getattr(args, "journey", None)
    try:
        config = _load_config(args, journey_path)
        configure_logging(config.execution.debug)
        return COMMANDS[args.command](args, config)
    except (JourneyEngineError, ValidationError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
