"""
Run Configuration
Engine, time control and match plan records plus the engine registry
"""

import json
import logging
import re
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field, asdict

from .errors import ConfigInvalid

logger = logging.getLogger(__name__)

BOOK_ORDERS = ("sequential", "random")
BOOK_FORMATS = ("epd", "fen")

# cutechess-style "[moves/]seconds[+increment]"
_TC_PATTERN = re.compile(r'^(?:(\d+)/)?(\d+(?:\.\d+)?)(?:\+(\d+(?:\.\d+)?))?$')


@dataclass(frozen=True)
class EngineConfig:
    """Engine configuration"""
    name: str
    path: str
    args: List[str] = field(default_factory=list)
    margin_ms: int = 400
    protocol: str = "uci"
    options: Dict[str, Any] = field(default_factory=dict)
    handshake_timeout: float = 10.0

    def __post_init__(self):
        if not self.name:
            raise ConfigInvalid("Engine name must not be empty")
        if self.protocol != "uci":
            raise ConfigInvalid(f"Unsupported protocol for {self.name}: {self.protocol}")
        if self.margin_ms < 0:
            raise ConfigInvalid(f"Negative time margin for {self.name}: {self.margin_ms}")
        if self.handshake_timeout <= 0:
            raise ConfigInvalid(f"Handshake timeout must be positive for {self.name}")

    @property
    def command(self) -> List[str]:
        return [self.path] + list(self.args)

    def check_executable(self):
        """Raise ConfigInvalid if the engine binary cannot be found"""
        if not Path(self.path).exists() and shutil.which(self.path) is None:
            raise ConfigInvalid(f"Engine not found: {self.path}")

    @classmethod
    def from_dict(cls, data: Dict) -> "EngineConfig":
        try:
            return cls(**data)
        except TypeError as e:
            raise ConfigInvalid(f"Bad engine entry {data!r}: {e}") from e


@dataclass(frozen=True)
class TimeControl:
    """
    Time control shared by both sides

    Args:
        base_ms: Time per side (per session when moves_per_session is set)
        increment_ms: Increment added after every move
        moves_per_session: Moves until the base time is added again
    """
    base_ms: int
    increment_ms: int = 0
    moves_per_session: Optional[int] = None

    def __post_init__(self):
        if self.base_ms <= 0:
            raise ConfigInvalid(f"Base time must be positive: {self.base_ms}")
        if self.increment_ms < 0:
            raise ConfigInvalid(f"Increment must not be negative: {self.increment_ms}")
        if self.moves_per_session is not None and self.moves_per_session <= 0:
            raise ConfigInvalid(f"Moves per session must be positive: {self.moves_per_session}")

    @classmethod
    def parse(cls, text: str) -> "TimeControl":
        """
        Parse a cutechess-style time control

        Examples: "10+0.1", "40/60", "100/8+0.8"
        """
        match = _TC_PATTERN.match(text.strip())
        if not match:
            raise ConfigInvalid(f"Invalid time control: {text!r}")

        moves, seconds, increment = match.groups()
        return cls(
            base_ms=int(round(float(seconds) * 1000)),
            increment_ms=int(round(float(increment) * 1000)) if increment else 0,
            moves_per_session=int(moves) if moves else None
        )

    def __str__(self) -> str:
        text = f"{self.base_ms / 1000:g}+{self.increment_ms / 1000:g}"
        if self.moves_per_session:
            text = f"{self.moves_per_session}/{text}"
        return text


class Clock:
    """Remaining time for one side of one game"""

    def __init__(self, time_control: TimeControl):
        self.time_control = time_control
        self.remaining_ms = time_control.base_ms
        self.moves_to_go = time_control.moves_per_session
        self.used_ms = 0

    def consume(self, elapsed_ms: int):
        """
        Book a completed move

        A late but accepted move drains the clock to zero, never below.
        """
        self.used_ms += elapsed_ms
        self.remaining_ms = max(0, self.remaining_ms - elapsed_ms)
        self.remaining_ms += self.time_control.increment_ms

        if self.moves_to_go is not None:
            self.moves_to_go -= 1
            if self.moves_to_go == 0:
                self.remaining_ms += self.time_control.base_ms
                self.moves_to_go = self.time_control.moves_per_session


@dataclass(frozen=True)
class ResignRule:
    """Adjudicate a loss when both engines agree for movecount moves"""
    movecount: int = 3
    score: int = 1000

    def __post_init__(self):
        if self.movecount <= 0 or self.score <= 0:
            raise ConfigInvalid("Resign rule needs positive movecount and score")


@dataclass(frozen=True)
class DrawRule:
    """Adjudicate a draw after movenumber plies of near-zero scores"""
    movenumber: int = 40
    movecount: int = 8
    score: int = 10

    def __post_init__(self):
        if self.movenumber < 0 or self.movecount <= 0 or self.score < 0:
            raise ConfigInvalid("Draw rule values out of range")


@dataclass(frozen=True)
class MatchPlan:
    """Shape of the match"""
    rounds: int = 1
    games_per_round: int = 1
    concurrency: int = 1
    repeat_colors: bool = True
    max_moves: int = 400
    resign: Optional[ResignRule] = None
    draw: Optional[DrawRule] = None

    def __post_init__(self):
        for name in ("rounds", "games_per_round", "concurrency", "max_moves"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ConfigInvalid(f"{name} must be a positive integer, got {value!r}")

    @property
    def pair_count(self) -> int:
        return self.rounds * self.games_per_round

    @property
    def slot_count(self) -> int:
        return self.pair_count * (2 if self.repeat_colors else 1)


@dataclass(frozen=True)
class SprtConfig:
    """Hypotheses and error rates for the sequential test"""
    elo0: float = 0.0
    elo1: float = 5.0
    alpha: float = 0.05
    beta: float = 0.05

    def __post_init__(self):
        if self.elo1 <= self.elo0:
            raise ConfigInvalid(f"SPRT needs elo1 > elo0, got [{self.elo0}, {self.elo1}]")
        if not (0 < self.alpha < 1 and 0 < self.beta < 1):
            raise ConfigInvalid("SPRT alpha and beta must lie in (0, 1)")


@dataclass(frozen=True)
class RunConfig:
    """Everything needed to run one match"""
    engine_a: EngineConfig
    engine_b: EngineConfig
    time_control: TimeControl
    plan: MatchPlan = field(default_factory=MatchPlan)
    book_path: Optional[str] = None
    book_order: str = "sequential"
    book_format: str = "epd"
    allow_book_repeat: bool = True
    seed: Optional[int] = None
    sprt: Optional[SprtConfig] = None
    name: str = "match"
    output_dir: str = "results"

    def __post_init__(self):
        if self.engine_a.name == self.engine_b.name:
            raise ConfigInvalid(f"Engines need distinct names, both are {self.engine_a.name!r}")
        if self.book_order not in BOOK_ORDERS:
            raise ConfigInvalid(f"Unknown book order: {self.book_order}")
        if self.book_format not in BOOK_FORMATS:
            raise ConfigInvalid(f"Unknown book format: {self.book_format}")
        if self.book_path is not None and not Path(self.book_path).is_file():
            raise ConfigInvalid(f"Opening book not found: {self.book_path}")

    def validate(self):
        """Checks that touch the filesystem beyond the book"""
        self.engine_a.check_executable()
        self.engine_b.check_executable()

    @classmethod
    def from_dict(cls, data: Dict, registry: Optional["EngineRegistry"] = None) -> "RunConfig":
        """
        Build a run configuration from parsed JSON

        Engines may be given inline as dicts or by name when a registry is passed.
        """
        data = dict(data)
        try:
            engine_a = _resolve_engine(data.pop("engine_a"), registry)
            engine_b = _resolve_engine(data.pop("engine_b"), registry)
            time_control = TimeControl.parse(str(data.pop("time_control")))
        except KeyError as e:
            raise ConfigInvalid(f"Missing run setting: {e.args[0]}") from e

        plan_data = dict(data.pop("plan", {}))
        sprt_data = data.pop("sprt", None)

        try:
            if plan_data.get("resign"):
                plan_data["resign"] = ResignRule(**plan_data["resign"])
            if plan_data.get("draw"):
                plan_data["draw"] = DrawRule(**plan_data["draw"])
            return cls(
                engine_a=engine_a,
                engine_b=engine_b,
                time_control=time_control,
                plan=MatchPlan(**plan_data),
                sprt=SprtConfig(**sprt_data) if sprt_data else None,
                **data
            )
        except TypeError as e:
            raise ConfigInvalid(f"Unknown run setting: {e}") from e

    @classmethod
    def load(cls, config_file: str, registry: Optional["EngineRegistry"] = None) -> "RunConfig":
        """Load run configuration from a JSON file"""
        path = Path(config_file)
        if not path.exists():
            raise ConfigInvalid(f"Run config not found: {config_file}")

        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigInvalid(f"Run config is not valid JSON: {e}") from e

        return cls.from_dict(data, registry)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["time_control"] = str(self.time_control)
        return data


def _resolve_engine(entry, registry: Optional["EngineRegistry"]) -> EngineConfig:
    if isinstance(entry, EngineConfig):
        return entry
    if isinstance(entry, dict):
        return EngineConfig.from_dict(entry)
    if registry is not None:
        config = registry.get_engine(str(entry))
        if config:
            return config
    raise ConfigInvalid(f"Unknown engine: {entry!r}")


class EngineRegistry:
    """
    Named engine configurations persisted as JSON

    Lets the CLI and the web API refer to engines by name.
    """

    def __init__(self, config_file: str = "config/engines.json"):
        """
        Initialize registry

        Args:
            config_file: Path to engine configuration file
        """
        self.config_file = Path(config_file)
        self.engines: Dict[str, EngineConfig] = {}
        self.load_config()

    def load_config(self):
        """Load engine configurations from file"""
        if not self.config_file.exists():
            logger.info(f"No engine registry at {self.config_file}, starting empty")
            return

        try:
            with open(self.config_file, 'r') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigInvalid(f"Engine registry is not valid JSON: {e}") from e

        self.engines = {
            name: EngineConfig.from_dict({"name": name, **config})
            for name, config in data.items()
        }

        logger.info(f"Loaded {len(self.engines)} engine configurations")

    def save_config(self):
        """Save engine configurations to file"""
        data = {}
        for name, config in self.engines.items():
            entry = asdict(config)
            entry.pop("name")
            data[name] = entry

        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, 'w') as f:
            json.dump(data, f, indent=2)

        logger.info(f"Saved {len(self.engines)} engine configurations")

    def add_engine(self, config: EngineConfig, save: bool = True):
        """Add or update engine configuration"""
        self.engines[config.name] = config

        if save:
            self.save_config()

        logger.info(f"Added engine: {config.name} at {config.path}")

    def remove_engine(self, name: str) -> bool:
        """Remove engine from registry"""
        if name in self.engines:
            del self.engines[name]
            self.save_config()
            logger.info(f"Removed engine: {name}")
            return True
        return False

    def get_engine(self, name: str) -> Optional[EngineConfig]:
        """Get engine configuration by name"""
        return self.engines.get(name)

    def list_engines(self) -> List[EngineConfig]:
        return list(self.engines.values())
