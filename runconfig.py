# Standard library
import json
import logging
import os
import re

# Standard library "from" statements
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

# 3rd party library "from" statements
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer, field_validator, model_validator

from errors import ConfigError


LOGGER = logging.getLogger("uptime.config")

# Defaults used for anything neither the config file nor the command line provides
DEFAULT_TTL = 128
DEFAULT_TIMEOUT = timedelta(milliseconds=1000)
DEFAULT_DELAY = timedelta(seconds=120)
DEFAULT_NUM_BYTES = 4
DEFAULT_OUTPUT_DIR = Path(".")
DEFAULT_CONFIG_NAME = "num_config.json"

# 65535 minus the 20 byte IPv4 header and the 8 byte ICMP header
MAX_NUM_BYTES = 65507

# "1000ms", "120s", "2m", "1h" or a bare number in the field's default unit
DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
UNIT_MILLISECONDS = {"ms": 1, "s": 1000, "m": 60 * 1000, "h": 60 * 60 * 1000}

# Longest timeout or delay accepted
MAX_DURATION = timedelta(days=30)


# Parses a duration from the config file or command line, rounded to whole milliseconds
def parse_duration(value: Any, default_unit: str) -> timedelta:
    if isinstance(value, timedelta):
        amount, unit = value.total_seconds(), "s"
    elif isinstance(value, bool):
        raise ValueError(f"{value!r} is not a duration")
    elif isinstance(value, (int, float)):
        amount, unit = value, default_unit
    elif isinstance(value, str):
        match = DURATION_PATTERN.match(value)
        if match is None:
            raise ValueError(f"{value!r} is not a duration, expected e.g. '1000ms' or '120s'")
        amount, unit = float(match.group(1)), match.group(2) or default_unit
    else:
        raise ValueError(f"{value!r} is not a duration")

    # inf and nan make round() raise
    try:
        milliseconds = round(amount * UNIT_MILLISECONDS[unit])
    except (OverflowError, ValueError) as e:
        raise ValueError(f"{value!r} is not a finite duration") from e
    if abs(milliseconds) > MAX_DURATION / timedelta(milliseconds=1):
        raise ValueError(f"{value!r} is longer than the {MAX_DURATION.days} day maximum")

    return timedelta(milliseconds=milliseconds)

# Formats a duration the way it is written to the config file. Seconds are only used when exact.
def format_duration(value: timedelta, unit: str = "ms") -> str:
    milliseconds = round(value.total_seconds() * 1000)
    if unit == "s" and milliseconds % 1000 == 0:
        return f"{milliseconds // 1000}s"
    return f"{milliseconds}ms"


# Every tunable parameter of one monitoring session
class RunConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    address: str = Field(min_length=1)
    num_bytes: int = Field(DEFAULT_NUM_BYTES, ge=0, le=MAX_NUM_BYTES)
    timeout: timedelta = DEFAULT_TIMEOUT
    ttl: int = Field(DEFAULT_TTL, ge=0, le=255)
    delay: timedelta = DEFAULT_DELAY
    output_dir: Path = DEFAULT_OUTPUT_DIR

    @field_validator("address", mode="before")
    @classmethod
    def _strip_address(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    # A bare number is milliseconds for the timeout, like the -t flag
    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, value: Any) -> timedelta:
        return parse_duration(value, "ms")

    # ...and seconds for the delay, like the -d flag
    @field_validator("delay", mode="before")
    @classmethod
    def _parse_delay(cls, value: Any) -> timedelta:
        return parse_duration(value, "s")

    @model_validator(mode="after")
    def _check_cadence(self) -> "RunConfig":
        if self.timeout <= timedelta(0):
            raise ValueError("timeout must be positive")
        if self.delay <= timedelta(0):
            raise ValueError("delay must be positive")
        # A probe has to resolve before the next one is due
        if self.timeout >= self.delay:
            raise ValueError(
                f"delay ({format_duration(self.delay, 's')}) must be greater than "
                f"the timeout ({format_duration(self.timeout)})"
            )
        return self

    @field_serializer("timeout")
    def _dump_timeout(self, value: timedelta) -> str:
        return format_duration(value, "ms")

    @field_serializer("delay")
    def _dump_delay(self, value: timedelta) -> str:
        return format_duration(value, "s")

    @field_serializer("output_dir")
    def _dump_output_dir(self, value: Path) -> str:
        return str(value)


# Turns a pydantic validation failure into a single readable line
def describe_validation_error(error: ValidationError) -> str:
    problems = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"])
        message = detail["msg"].removeprefix("Value error, ")
        problems.append(f"{location}: {message}" if location else message)
    return "; ".join(problems)

# Builds and validates a RunConfig from plain values
def build(**values: Any) -> RunConfig:
    if values.get("address") is None:
        raise ConfigError("No address to monitor was given, and none is stored in the config file")

    try:
        return RunConfig(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {describe_validation_error(e)}") from e

# Reads the JSON object stored at path, or None if there is no such file
def read_document(path: Path) -> Optional[Dict[str, Any]]:
    try:
        with open(path, "r") as f:
            contents = f.read()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise ConfigError(f"Could not read config file {path}: {e}") from e

    try:
        document = json.loads(contents)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e

    if not isinstance(document, dict):
        raise ConfigError(f"Config file {path} must hold a JSON object, not {type(document).__name__}")

    return document

# Loads the config stored at path. Overrides that are not None win over stored values.
def load(path: Path, overrides: Optional[Dict[str, Any]] = None) -> RunConfig:
    document = read_document(Path(path))
    if document is None:
        LOGGER.debug(f"No config file at {path}, using defaults")
        document = {}

    values = dict(document)
    for key, value in (overrides or {}).items():
        if value is not None:
            values[key] = value

    return build(**values)

# Writes the config as compact JSON, replacing whatever was at path
def save(path: Path, config: RunConfig) -> None:
    path = Path(path)
    document = json.dumps(config.model_dump(mode="json"), separators=(",", ":"))

    # Write next to the target and rename over it so a crash never leaves half a file behind
    temporary = path.with_name(f".{path.name}.tmp")
    try:
        with open(temporary, "w") as f:
            f.write(document)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temporary, path)
    except OSError as e:
        raise ConfigError(f"Could not write config file {path}: {e}") from e
