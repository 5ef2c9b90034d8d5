from __future__ import annotations

import os
from dataclasses import dataclass

from .errors import ConfigInvalid, CredentialsMissing


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


STORE_BACKENDS = {"json", "sqlite"}


@dataclass(frozen=True)
class Settings:
    # Port range handed out to proxies (inclusive on both ends)
    port_range_start: int = _env_int("PF_PORT_RANGE_START", 12000)
    port_range_end: int = _env_int("PF_PORT_RANGE_END", 13999)
    max_proxies: int = _env_int("PF_MAX_PROXIES", 300)

    # VPN provider credentials, injected into every tunnel container
    vpn_username: str | None = os.getenv("PF_VPN_USERNAME")
    vpn_password: str | None = os.getenv("PF_VPN_PASSWORD")

    # Region hints are stored and passed on but not enforced by the provider.
    default_country: str | None = os.getenv("PF_DEFAULT_COUNTRY", "US")
    default_city: str | None = os.getenv("PF_DEFAULT_CITY")

    # Containers
    vpn_image: str = os.getenv("PF_VPN_IMAGE", "curve25519xsalsa20poly1305/openvpn-socks5:latest")
    probe_image: str = os.getenv("PF_PROBE_IMAGE", "curlimages/curl:latest")
    vpn_config_dir: str = os.getenv("PF_VPN_CONFIG_DIR", "./pia-configs")
    socks_bind: str = os.getenv("PF_SOCKS_BIND", "0.0.0.0")
    socks_host: str = os.getenv("PF_SOCKS_HOST", "127.0.0.1")

    # Health / healing
    exit_ip_check_url: str = os.getenv("PF_EXIT_IP_CHECK_URL", "https://ifconfig.io")
    health_interval_s: int = _env_int("PF_HEALTH_INTERVAL_S", 15)
    auto_heal_enabled: bool = _env_bool("PF_AUTO_HEAL_ENABLED", True)
    probe_timeout_s: float = _env_float("PF_PROBE_TIMEOUT_S", 5.0)
    fallback_timeout_s: float = _env_float("PF_FALLBACK_TIMEOUT_S", 10.0)
    settle_delay_s: float = _env_float("PF_SETTLE_DELAY_S", 5.0)

    # Fan-out widths
    probe_concurrency: int = _env_int("PF_PROBE_CONCURRENCY", 20)
    heal_batch_size: int = _env_int("PF_HEAL_BATCH_SIZE", 5)
    create_batch_size: int = _env_int("PF_CREATE_BATCH_SIZE", 5)

    # Persistence
    store_backend: str = os.getenv("PF_STORE_BACKEND", "json")
    db_path: str = os.getenv("PF_DB_PATH", "./data/proxies.json")

    # REST API
    rest_enabled: bool = _env_bool("PF_REST_ENABLED", False)
    rest_host: str = os.getenv("PF_REST_HOST", "127.0.0.1")
    rest_port: int = _env_int("PF_REST_PORT", 8080)

    log_level: str = os.getenv("PF_LOG_LEVEL", "INFO")

    @property
    def port_capacity(self) -> int:
        return self.port_range_end - self.port_range_start + 1


def validate_settings(s: Settings) -> None:
    """Raise if the settings cannot run a farm.

    Credentials are checked first so that a fresh checkout reports the
    most common misconfiguration.
    """
    if not s.vpn_username or not s.vpn_password:
        raise CredentialsMissing("PF_VPN_USERNAME and PF_VPN_PASSWORD must be set.")
    if s.port_range_start >= s.port_range_end:
        raise ConfigInvalid("PF_PORT_RANGE_START must be less than PF_PORT_RANGE_END.")
    if s.port_capacity < s.max_proxies:
        raise ConfigInvalid(
            f"Port range only has {s.port_capacity} ports but PF_MAX_PROXIES is {s.max_proxies}."
        )
    if s.store_backend not in STORE_BACKENDS:
        raise ConfigInvalid(f"Unknown PF_STORE_BACKEND '{s.store_backend}' (expected json|sqlite).")


settings = Settings()
