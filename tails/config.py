"""Configuration for the Tails server.

Values are merged in increasing priority: defaults, a YAML file,
``TAILS_<FIELD>`` environment variables, then explicit overrides (CLI flags).

Example YAML:
    port: 9000
    source: poll
    delivery_policy: timeout
    send_timeout: 2.5
    max_subscribers: 1
    capacity_mode: preempt
"""

import shlex
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Type, Union

import yaml
from pydantic import Field, ValidationError, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    NoDecode,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from .exceptions import ConfigError
from .source.runner import RestartPolicy
from .source.tailer import DEFAULT_TAIL_COMMAND, LineSource, create_source
from .streaming.broker import CapacityMode, DeliveryPolicy, EventBroker

ENV_PREFIX = "TAILS_"


class YamlFileSource(PydanticBaseSettingsSource):
    """Settings source reading the YAML file named by the ``yaml_file`` config key."""

    def __init__(self, settings_cls: Type[BaseSettings]):
        super().__init__(settings_cls)
        yaml_file = self.config.get("yaml_file")
        self._data = _load_yaml(Path(yaml_file)) if yaml_file else {}

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        return self._data.get(field_name), field_name, False

    def __call__(self) -> Dict[str, Any]:
        return dict(self._data)


class TailsConfig(BaseSettings):
    """Validated server configuration."""
    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_parse_none_str="none",
        case_sensitive=False,
        extra="forbid",
    )

    path: Optional[Path] = None
    host: str = "0.0.0.0"
    port: int = Field(8080, ge=0, le=65535)

    # Line source
    source: Literal["process", "poll"] = "process"
    tail_command: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_TAIL_COMMAND), min_length=1
    )
    poll_interval: float = Field(0.25, gt=0)
    missing_file_timeout: float = Field(5.0, gt=0)
    max_line_bytes: int = Field(1024 * 1024, gt=0)

    # Restart policy
    restart: bool = True
    restart_initial_backoff: float = Field(0.5, gt=0)
    restart_max_backoff: float = Field(30.0, gt=0)
    restart_multiplier: float = Field(2.0, ge=1)
    restart_max_attempts: Optional[int] = Field(10, ge=1)

    # Broker
    delivery_policy: DeliveryPolicy = DeliveryPolicy.DROP
    subscriber_queue_size: int = Field(1000, ge=0)
    send_timeout: float = Field(5.0, gt=0)
    max_subscribers: Optional[int] = Field(None, ge=1)
    capacity_mode: CapacityMode = CapacityMode.REJECT
    ingest_queue_size: int = Field(1024, ge=0)

    # Streaming endpoint
    heartbeat_interval: float = Field(30.0, gt=0)
    retry_ms: Optional[int] = Field(3000, ge=0)
    event_name: str = "message"
    disconnect_poll_interval: float = Field(1.0, gt=0)
    connect_rate_limit: str = "60/minute"
    static_dir: Optional[Path] = None

    @field_validator("tail_command", mode="before")
    @classmethod
    def _split_command(cls, value: Any) -> Any:
        """Accept a shell-style command string as well as a list."""
        if isinstance(value, str):
            return shlex.split(value)
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return init_settings, env_settings, YamlFileSource(settings_cls)

    def restart_policy(self) -> RestartPolicy:
        return RestartPolicy(
            enabled=self.restart,
            initial_backoff=self.restart_initial_backoff,
            max_backoff=self.restart_max_backoff,
            multiplier=self.restart_multiplier,
            max_attempts=self.restart_max_attempts,
        )

    def create_broker(self) -> EventBroker:
        return EventBroker(
            policy=self.delivery_policy,
            queue_size=self.subscriber_queue_size,
            send_timeout=self.send_timeout,
            max_subscribers=self.max_subscribers,
            capacity_mode=self.capacity_mode,
            ingest_queue_size=self.ingest_queue_size,
        )

    def create_source(self) -> LineSource:
        if self.path is None:
            raise ConfigError("No file to tail: path is not set")
        return create_source(
            self.source,
            self.path,
            command=self.tail_command,
            poll_interval=self.poll_interval,
            missing_file_timeout=self.missing_file_timeout,
            max_line_bytes=self.max_line_bytes,
        )


def load_config(
    config_file: Optional[Union[str, Path]] = None,
    **overrides: Any
) -> TailsConfig:
    """Build a TailsConfig from a YAML file, the environment and overrides.

    Args:
        config_file: Optional YAML file.
        **overrides: Field values that win over everything else. None values
            are ignored so unset CLI flags fall through.

    Returns:
        The validated configuration.

    Raises:
        ConfigError: If the file cannot be read or a value is invalid.
    """
    settings_cls: Type[TailsConfig] = TailsConfig
    if config_file is not None:
        class FileTailsConfig(TailsConfig):
            model_config = SettingsConfigDict(yaml_file=Path(config_file))

        settings_cls = FileTailsConfig

    try:
        return settings_cls(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc']) or 'config'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ConfigError("Invalid configuration: " + "; ".join(errors), errors=errors) from e


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        content = yaml.safe_load(path.read_text())
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")

    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return {str(key).replace("-", "_"): value for key, value in content.items()}
