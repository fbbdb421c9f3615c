"""voyeurs configuration file (TOML) parsing and validation."""
from __future__ import annotations
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

DEFAULT_PORT = 9420


@dataclass
class SyncSettings:
    drift_tolerance_s: float = 0.3
    degraded_drift_tolerance_s: float = 1.0
    rate_tolerance: float = 0.001
    liveness_window_s: float = 15.0
    handshake_timeout_s: float = 5.0
    ping_interval_s: float = 2.0
    full_state_interval_s: float = 10.0
    drift_check_interval_s: float = 1.0
    ewma_alpha: float = 0.2
    rtt_window: int = 8
    outlier_factor: float = 3.0
    outlier_limit: int = 3


@dataclass
class ReconnectSettings:
    initial_delay_s: float = 0.5
    max_delay_s: float = 30.0
    max_attempts: int = 10


@dataclass
class PlayerSettings:
    ipc_socket: str = "/tmp/mpv.sock"
    command_timeout_s: float = 3.0
    retry_attempts: int = 3
    retry_delay_s: float = 0.2
    queue_size: int = 8
    echo_ignore_window_s: float = 0.5


@dataclass
class NetworkSettings:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT


@dataclass
class ClientSettings:
    username: str = "user"
    accept_source: bool = True
    server_host: str = "127.0.0.1"


@dataclass
class LoggingSettings:
    log_dir: str = "logs"
    level: str = "INFO"


@dataclass
class Config:
    sync: SyncSettings = field(default_factory=SyncSettings)
    reconnect: ReconnectSettings = field(default_factory=ReconnectSettings)
    player: PlayerSettings = field(default_factory=PlayerSettings)
    network: NetworkSettings = field(default_factory=NetworkSettings)
    client: ClientSettings = field(default_factory=ClientSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    def validate(self) -> list[str]:
        errors = []
        s = self.sync
        for name in ("drift_tolerance_s", "degraded_drift_tolerance_s", "liveness_window_s",
                     "handshake_timeout_s", "ping_interval_s", "full_state_interval_s",
                     "drift_check_interval_s"):
            if getattr(s, name) <= 0:
                errors.append(f"sync.{name} must be positive")
        if s.degraded_drift_tolerance_s < s.drift_tolerance_s:
            errors.append("sync.degraded_drift_tolerance_s must not be below sync.drift_tolerance_s")
        if not 0.0 < s.ewma_alpha <= 1.0:
            errors.append("sync.ewma_alpha must be in (0, 1]")
        if s.rtt_window < 1:
            errors.append("sync.rtt_window must be at least 1")
        if s.outlier_factor <= 1.0:
            errors.append("sync.outlier_factor must be greater than 1")
        if self.reconnect.max_attempts < 0:
            errors.append("reconnect.max_attempts must not be negative")
        if self.reconnect.initial_delay_s <= 0 or self.reconnect.max_delay_s < self.reconnect.initial_delay_s:
            errors.append("reconnect delays must be positive and max_delay_s >= initial_delay_s")
        if self.player.queue_size < 1:
            errors.append("player.queue_size must be at least 1")
        if self.player.retry_attempts < 0:
            errors.append("player.retry_attempts must not be negative")
        if not (0 < self.network.port < 65536):
            errors.append(f"Invalid network.port: {self.network.port}")
        if not self.client.username.isalnum():
            errors.append(f"client.username '{self.client.username}' must be alphanumeric")
        if self.logging.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"Invalid logging.level: {self.logging.level}")
        return errors


def _parse_sync(raw: dict) -> SyncSettings:
    d = SyncSettings()
    return SyncSettings(
        drift_tolerance_s=raw.get("drift_tolerance_ms", d.drift_tolerance_s * 1000) / 1000.0,
        degraded_drift_tolerance_s=raw.get(
            "degraded_drift_tolerance_ms", d.degraded_drift_tolerance_s * 1000) / 1000.0,
        rate_tolerance=raw.get("rate_tolerance", d.rate_tolerance),
        liveness_window_s=raw.get("liveness_window_s", d.liveness_window_s),
        handshake_timeout_s=raw.get("handshake_timeout_s", d.handshake_timeout_s),
        ping_interval_s=raw.get("ping_interval_s", d.ping_interval_s),
        full_state_interval_s=raw.get("full_state_interval_s", d.full_state_interval_s),
        drift_check_interval_s=raw.get("drift_check_interval_s", d.drift_check_interval_s),
        ewma_alpha=raw.get("ewma_alpha", d.ewma_alpha),
        rtt_window=raw.get("rtt_window", d.rtt_window),
        outlier_factor=raw.get("outlier_factor", d.outlier_factor),
        outlier_limit=raw.get("outlier_limit", d.outlier_limit),
    )


def _parse_reconnect(raw: dict) -> ReconnectSettings:
    d = ReconnectSettings()
    return ReconnectSettings(
        initial_delay_s=raw.get("initial_delay_s", d.initial_delay_s),
        max_delay_s=raw.get("max_delay_s", d.max_delay_s),
        max_attempts=raw.get("max_attempts", d.max_attempts),
    )


def _parse_player(raw: dict) -> PlayerSettings:
    d = PlayerSettings()
    return PlayerSettings(
        ipc_socket=raw.get("ipc_socket", d.ipc_socket),
        command_timeout_s=raw.get("command_timeout_s", d.command_timeout_s),
        retry_attempts=raw.get("retry_attempts", d.retry_attempts),
        retry_delay_s=raw.get("retry_delay_s", d.retry_delay_s),
        queue_size=raw.get("queue_size", d.queue_size),
        echo_ignore_window_s=raw.get(
            "echo_ignore_window_ms", d.echo_ignore_window_s * 1000) / 1000.0,
    )


def _parse_network(raw: dict) -> NetworkSettings:
    d = NetworkSettings()
    return NetworkSettings(host=raw.get("host", d.host), port=raw.get("port", d.port))


def _parse_client(raw: dict) -> ClientSettings:
    d = ClientSettings()
    return ClientSettings(
        username=raw.get("username", d.username),
        accept_source=raw.get("accept_source", d.accept_source),
        server_host=raw.get("server_host", d.server_host),
    )


def _parse_logging(raw: dict) -> LoggingSettings:
    d = LoggingSettings()
    return LoggingSettings(log_dir=raw.get("log_dir", d.log_dir), level=raw.get("level", d.level))


def load_config(path: Optional[Path] = None) -> Config:
    """Load a voyeurs.toml file; missing file or sections fall back to defaults."""
    if path is None:
        return Config()
    with open(path, "rb") as f:
        data = tomllib.load(f)

    return Config(
        sync=_parse_sync(data.get("sync", {})),
        reconnect=_parse_reconnect(data.get("reconnect", {})),
        player=_parse_player(data.get("player", {})),
        network=_parse_network(data.get("network", {})),
        client=_parse_client(data.get("client", {})),
        logging=_parse_logging(data.get("logging", {})),
    )
