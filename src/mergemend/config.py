from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import tomllib
from typing import Literal, cast


ProviderKind = Literal["gitlab", "github"]
AgentKind = Literal["gemini", "codex"]

_PROVIDER_KINDS: tuple[ProviderKind, ...] = ("gitlab", "github")
_AGENT_KINDS: tuple[AgentKind, ...] = ("gemini", "codex")


@dataclass(frozen=True)
class RuntimeConfig:
    workspace_dir: Path
    poll_interval_seconds: int = 300
    default_target_branch: str = "main"
    fork_wait_delay_seconds: float = 5.0
    fork_wait_timeout_seconds: float = 600.0
    enable_reviews: bool = False
    enable_pipeline_watch: bool = False
    log_dir: Path | None = None


@dataclass(frozen=True)
class AgentConfig:
    kind: AgentKind = "gemini"
    model: str | None = None
    timeout_seconds: int = 1200
    api_key_env: str | None = None
    extra_args: tuple[str, ...] = ()


@dataclass(frozen=True)
class ServerConfig:
    server_id: str
    provider: ProviderKind
    endpoint: str
    user_name: str
    token: str
    display_name: str
    user_email: str

    @property
    def hostname(self) -> str:
        without_scheme = self.endpoint.split("://", 1)[-1]
        return without_scheme.split("/", 1)[0]

    @property
    def auth(self) -> str:
        return f"{self.user_name}:{self.token}"

    def is_bot(self, login: str | None) -> bool:
        if login is None:
            return False
        return login.strip().lower() == self.user_name.strip().lower()


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    agent: AgentConfig
    servers: tuple[ServerConfig, ...]

    def server(self, server_id: str) -> ServerConfig:
        for server in self.servers:
            if server.server_id == server_id:
                return server
        available = ", ".join(server.server_id for server in self.servers)
        raise ConfigError(f"Unknown server id {server_id!r}; expected one of: {available}")


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    agent_data = _optional_table(data, "agent") or {}
    server_data = _require_table(data, "server")

    return AppConfig(
        runtime=_parse_runtime(runtime_data),
        agent=_parse_agent(agent_data),
        servers=_parse_servers(server_data),
    )


def _parse_runtime(data: dict[str, object]) -> RuntimeConfig:
    runtime = RuntimeConfig(
        workspace_dir=Path(_require_str(data, "workspace_dir")).expanduser(),
        poll_interval_seconds=_int_with_default(data, "poll_interval_seconds", 300),
        default_target_branch=_str_with_default(data, "default_target_branch", "main"),
        fork_wait_delay_seconds=_number_with_default(data, "fork_wait_delay_seconds", 5.0),
        fork_wait_timeout_seconds=_number_with_default(data, "fork_wait_timeout_seconds", 600.0),
        enable_reviews=_bool_with_default(data, "enable_reviews", False),
        enable_pipeline_watch=_bool_with_default(data, "enable_pipeline_watch", False),
        log_dir=_optional_path(data, "log_dir"),
    )
    if runtime.poll_interval_seconds < 5:
        raise ConfigError("runtime.poll_interval_seconds must be >= 5")
    if runtime.fork_wait_delay_seconds < 0:
        raise ConfigError("runtime.fork_wait_delay_seconds must be >= 0")
    if runtime.fork_wait_timeout_seconds <= 0:
        raise ConfigError("runtime.fork_wait_timeout_seconds must be > 0")
    return runtime


def _parse_agent(data: dict[str, object]) -> AgentConfig:
    kind = _str_with_default(data, "kind", "gemini").strip().lower()
    if kind not in _AGENT_KINDS:
        raise ConfigError(f"agent.kind must be one of: {', '.join(_AGENT_KINDS)}")
    agent = AgentConfig(
        kind=cast(AgentKind, kind),
        model=_optional_str(data, "model"),
        timeout_seconds=_int_with_default(data, "timeout_seconds", 1200),
        api_key_env=_optional_str(data, "api_key_env"),
        extra_args=_tuple_of_str(data, "extra_args"),
    )
    if agent.timeout_seconds < 1:
        raise ConfigError("agent.timeout_seconds must be >= 1")
    return agent


def _parse_servers(data: dict[str, object]) -> tuple[ServerConfig, ...]:
    if not data:
        raise ConfigError("[server] must define at least one [server.<id>] table")
    servers: list[ServerConfig] = []
    for server_id, raw_value in sorted(data.items()):
        table = _require_subtable(raw_value, table_name=f"[server.{server_id}]")
        servers.append(_parse_server(server_id=server_id, data=table))
    return tuple(servers)


def _parse_server(*, server_id: str, data: dict[str, object]) -> ServerConfig:
    provider = _require_str(data, "provider").strip().lower()
    if provider not in _PROVIDER_KINDS:
        raise ConfigError(
            f"server.{server_id}.provider must be one of: {', '.join(_PROVIDER_KINDS)}"
        )
    user_name = _require_str(data, "user_name")
    return ServerConfig(
        server_id=server_id,
        provider=cast(ProviderKind, provider),
        endpoint=_require_str(data, "endpoint").rstrip("/"),
        user_name=user_name,
        token=_resolve_token(server_id=server_id, data=data),
        display_name=_str_with_default(data, "display_name", user_name),
        user_email=_require_str(data, "user_email"),
    )


def _resolve_token(*, server_id: str, data: dict[str, object]) -> str:
    token = _optional_str(data, "token")
    token_env = _optional_str(data, "token_env")
    if token is not None and token_env is not None:
        raise ConfigError(f"server.{server_id} must set only one of token, token_env")
    if token is not None:
        return token
    if token_env is None:
        raise ConfigError(f"server.{server_id} requires token or token_env")
    value = os.environ.get(token_env, "").strip()
    if not value:
        raise ConfigError(f"Environment variable {token_env} for server.{server_id} is empty")
    return value


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    return cast(dict[str, object], value)


def _require_subtable(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _number_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)


def _optional_path(data: dict[str, object], key: str) -> Path | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    return Path(value).expanduser()
