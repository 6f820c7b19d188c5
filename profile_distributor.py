# profile_distributor.py
"""
Weighted sampling of synthetic users.

A ProfileDistributor is shared by every virtual user of a run. Each call to
`get_next_user` picks a profile by weight, hands out that profile's next data
row (round-robin, wrapping) and runs the profile's generators. All mutable
state (row cursors, sequence counters, draw counts) is changed under a single
lock, so the distributor can be used from threads and from asyncio tasks.
"""

import csv
import json
import random
import re
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from faker import Faker

from engine_errors import ConfigurationError, DataSourceError
from engine_logging import get_logger
from journey_loader import load_profile_config
from journey_models import (
    FakerGenerator,
    Generator,
    Profile,
    ProfileConfig,
    ProfileDistributionStats,
    RandomGenerator,
    SequenceGenerator,
    TimestampGenerator,
    UserContext,
    UuidGenerator,
)

logger = get_logger("distributor")

__all__ = ["ProfileDistributor", "load_profile_distributor", "DEFAULT_RANDOM_LENGTH"]

DEFAULT_RANDOM_LENGTH = 10
DEFAULT_RANDOM_MIN = 0
DEFAULT_RANDOM_MAX = 100

_camel_boundary_regex = re.compile(r"(?<!^)(?=[A-Z])")

UserRow = Dict[str, Any]


def _snake_case(name: str) -> str:
    return _camel_boundary_regex.sub("_", name).lower()


class ProfileDistributor:

    def __init__(self, config: ProfileConfig, base_path: Union[str, Path] = ".", seed: Optional[int] = None):
        self.config = config
        self.base_path = Path(base_path)
        self.seed = seed
        self._rng = random.Random(seed)
        self._lock = threading.Lock()

        total_weight = sum(profile.weight for profile in config.profiles)
        if total_weight <= 0:
            raise ConfigurationError("Total profile weight cannot be zero")

        self._profiles: List[Profile] = list(config.profiles)
        self._normalized: Dict[str, float] = {}
        self._cumulative: List[Tuple[float, Profile]] = []
        cumulative = 0.0
        for profile in self._profiles:
            normalized = profile.weight / total_weight
            cumulative += normalized
            self._normalized[profile.name] = normalized
            self._cumulative.append((cumulative, profile))

        self._rows: Dict[str, List[UserRow]] = {}
        self._cursors: Dict[str, int] = {profile.name: 0 for profile in self._profiles}
        self._sequences: Dict[Tuple[str, str], Union[int, float]] = {}
        self._counts: Dict[str, int] = {profile.name: 0 for profile in self._profiles}
        self._total = 0

        self._fakers: Dict[Optional[str], Faker] = {}
        self._faker_methods: Dict[Tuple[str, str], Callable] = {}
        for profile in self._profiles:
            for name, generator in profile.generators.items():
                if isinstance(generator, FakerGenerator):
                    self._faker_methods[(profile.name, name)] = self._resolve_faker_method(generator, profile.name, name)

        for profile in self._profiles:
            if profile.data_source:
                continue
            if profile.data:
                self._rows[profile.name] = [dict(row) for row in profile.data]
            else:
                if profile.data is not None:
                    logger.warning(f"Profile '{profile.name}' has an empty 'data' list; using a single empty row.")
                self._rows[profile.name] = [{}]

        logger.info(
            f"Profile distributor ready with {len(self._profiles)} profile(s): "
            + ", ".join(f"{name}={share * 100:.1f}%" for name, share in self._normalized.items())
        )

    # ---------------------------
    # Data loading
    # ---------------------------

    def load_data(self):
        """Reads every profile's `dataSource`. Inline rows are already in place."""
        for profile in self._profiles:
            if not profile.data_source:
                continue
            rows = self._load_data_source(profile.data_source)
            if not rows:
                logger.warning(f"Data source '{profile.data_source}' for profile '{profile.name}' has no rows; using a single empty row.")
                rows = [{}]
            with self._lock:
                self._rows[profile.name] = rows
            logger.info(f"Loaded {len(rows)} row(s) for profile '{profile.name}' from {profile.data_source}")

    def _resolve_path(self, source: str) -> Path:
        path = Path(source)
        if not path.is_absolute():
            path = self.base_path / path
        return path

    def _load_data_source(self, source: str) -> List[UserRow]:
        path = self._resolve_path(source)
        if not path.is_file():
            raise DataSourceError(f"Data source not found: {path}")

        suffix = path.suffix.lower()
        try:
            if suffix == ".csv":
                return self._read_csv(path)
            if suffix == ".json":
                return self._read_json(path)
        except (OSError, UnicodeDecodeError, csv.Error) as e:
            raise DataSourceError(f"Failed to read data source {path}: {e}") from e
        raise DataSourceError(f"Unsupported data source format: {path}")

    @staticmethod
    def _read_csv(path: Path) -> List[UserRow]:
        rows: List[UserRow] = []
        with path.open("r", encoding="utf-8-sig", newline="") as f:
            reader = csv.DictReader(f, skipinitialspace=True)
            if reader.fieldnames is None:
                return rows
            reader.fieldnames = [name.strip() for name in reader.fieldnames]
            for record in reader:
                row = {
                    key: (value.strip() if isinstance(value, str) else "")
                    for key, value in record.items()
                    if key is not None
                }
                if not any(row.values()):
                    continue
                rows.append(row)
        return rows

    @staticmethod
    def _read_json(path: Path) -> List[UserRow]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise DataSourceError(f"Invalid JSON in data source {path}: {e}") from e
        if isinstance(data, dict):
            return [data]
        if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
            raise DataSourceError(f"JSON data source {path} must be an object or an array of objects")
        return data

    # ---------------------------
    # Generators
    # ---------------------------

    def _get_faker(self, locale: Optional[str]) -> Faker:
        fake = self._fakers.get(locale)
        if fake is None:
            fake = Faker(locale) if locale else Faker()
            if self.seed is not None:
                fake.seed_instance(self.seed)
            self._fakers[locale] = fake
        return fake

    def _resolve_faker_method(self, generator: FakerGenerator, profile_name: str, generator_name: str) -> Callable:
        """
        Resolves a dotted provider path on a Faker instance. Paths written for
        other fake-data libraries (`person.firstName`) fall back to the
        snake_case leaf (`first_name`).
        """
        method = generator.options.method
        try:
            fake = self._get_faker(generator.options.locale)
        except AttributeError as e:
            raise ConfigurationError(
                f"Generator '{generator_name}' of profile '{profile_name}': unknown faker locale '{generator.options.locale}'"
            ) from e

        target: Any = fake
        try:
            for part in method.split("."):
                target = getattr(target, part)
        except AttributeError:
            leaf = _snake_case(method.split(".")[-1])
            target = getattr(fake, leaf, None)
            if target is None:
                raise ConfigurationError(
                    f"Generator '{generator_name}' of profile '{profile_name}': unknown faker method '{method}'"
                )
            logger.debug(f"Faker method '{method}' resolved as '{leaf}'")

        if not callable(target):
            raise ConfigurationError(
                f"Generator '{generator_name}' of profile '{profile_name}': faker member '{method}' is not callable"
            )
        return target

    def _uuid(self, generator: UuidGenerator) -> str:
        if generator.options.version == 1:
            return str(uuid.uuid1())
        if self.seed is not None:
            return str(uuid.UUID(int=self._rng.getrandbits(128), version=4))
        return str(uuid.uuid4())

    @staticmethod
    def _timestamp(generator: TimestampGenerator) -> Union[int, str]:
        fmt = generator.options.format
        if fmt == 'epoch_s':
            return int(time.time())
        if fmt == 'iso':
            return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        return int(time.time() * 1000)

    def _random(self, generator: RandomGenerator) -> Union[int, str]:
        options = generator.options
        if options.charset:
            length = options.length or DEFAULT_RANDOM_LENGTH
            return "".join(self._rng.choice(options.charset) for _ in range(length))
        low = DEFAULT_RANDOM_MIN if options.min is None else options.min
        high = DEFAULT_RANDOM_MAX if options.max is None else options.max
        return self._rng.randint(low, high)

    def _sequence(self, generator: SequenceGenerator, key: Tuple[str, str],
                  pending: Dict[Tuple[str, str], Union[int, float]]) -> Union[int, float]:
        current = pending.get(key, self._sequences.get(key))
        if current is None:
            current = generator.options.start
        else:
            current += generator.options.step
        pending[key] = current
        return current

    def _run_generator(self, generator: Generator, profile_name: str, generator_name: str,
                       pending: Dict[Tuple[str, str], Union[int, float]]) -> Any:
        if isinstance(generator, UuidGenerator):
            return self._uuid(generator)
        if isinstance(generator, TimestampGenerator):
            return self._timestamp(generator)
        if isinstance(generator, RandomGenerator):
            return self._random(generator)
        if isinstance(generator, SequenceGenerator):
            return self._sequence(generator, (profile_name, generator_name), pending)
        if isinstance(generator, FakerGenerator):
            method = self._faker_methods[(profile_name, generator_name)]
            return method(*generator.options.args, **generator.options.kwargs)
        raise ConfigurationError(f"Unknown generator type for '{generator_name}': {type(generator).__name__}")

    # ---------------------------
    # Sampling
    # ---------------------------

    def select_profile(self, r: float) -> Profile:
        """First profile in declared order whose cumulative weight is >= r. Zero-weight profiles never win."""
        for cumulative, profile in self._cumulative:
            if r <= cumulative and profile.weight > 0:
                return profile
        return self._cumulative[-1][1]

    def get_next_user(self) -> UserContext:
        with self._lock:
            profile = self.select_profile(self._rng.random())

            rows = self._rows.get(profile.name)
            if rows is None:
                raise DataSourceError(
                    f"Data source for profile '{profile.name}' has not been loaded; call load_data() first"
                )
            cursor = self._cursors[profile.name]
            user_data = dict(rows[cursor % len(rows)])

            # A generator that raises leaves the cursor and sequences untouched
            pending: Dict[Tuple[str, str], Union[int, float]] = {}
            generated = {
                name: self._run_generator(generator, profile.name, name, pending)
                for name, generator in profile.generators.items()
            }

            self._sequences.update(pending)
            self._cursors[profile.name] = cursor + 1
            self._total += 1
            self._counts[profile.name] += 1

        logger.debug(f"Drew user from profile '{profile.name}' (row {cursor % len(rows)} of {len(rows)})")
        return UserContext(
            profile_name=profile.name,
            user_data=user_data,
            variables=dict(profile.variables),
            generated_values=generated,
        )

    # ---------------------------
    # Statistics
    # ---------------------------

    def get_stats(self) -> ProfileDistributionStats:
        with self._lock:
            counts = dict(self._counts)
            total = self._total
        percentages = {name: (count / total * 100 if total else 0.0) for name, count in counts.items()}
        return ProfileDistributionStats(total_users=total, profile_counts=counts, profile_percentages=percentages)

    def get_target_distribution(self) -> Dict[str, float]:
        return {name: share * 100 for name, share in self._normalized.items()}

    def get_distribution_drift(self) -> Dict[str, float]:
        """Actual minus target share per profile, in percentage points."""
        stats = self.get_stats()
        target = self.get_target_distribution()
        return {name: stats.profile_percentages[name] - target[name] for name in target}

    def reset(self):
        with self._lock:
            self._total = 0
            for name in self._counts:
                self._counts[name] = 0
                self._cursors[name] = 0
            self._sequences.clear()
        logger.debug("Profile distributor state reset")


def load_profile_distributor(
    path: Union[str, Path],
    base_path: Optional[Union[str, Path]] = None,
    seed: Optional[int] = None,
) -> ProfileDistributor:
    """Reads a profile document, builds the distributor and loads its data sources."""
    path = Path(path).resolve()
    config = load_profile_config(path)
    distributor = ProfileDistributor(config, base_path=base_path or path.parent, seed=seed)
    distributor.load_data()
    return distributor
