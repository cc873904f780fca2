"""Runtime settings and the startup context builder.

Settings come from ``DBWALRUS_*`` environment variables; the server entry
point overrides a few of them from its command line. ``build_context`` is
called once at startup and its result is read-only afterwards.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Optional

from .core.exceptions import ConfigurationError
from .core.pipeline import PipelineContext
from .core.retry import RetryPolicy
from .core.storage import LocalBlobStore
from .network.walrus import TESTNET_AGGREGATOR, TESTNET_PUBLISHER, WalrusHttpStore
from .security.identity import load_signer

logger = logging.getLogger(__name__)

ENV_PREFIX = "DBWALRUS_"
BACKENDS = ("local", "walrus")


@dataclass(frozen=True)
class Settings:
    network: str = "testnet"
    backend: str = "local"
    storage_root: Path = field(default_factory=lambda: Path.home() / ".dbwalrus")
    publisher_url: str = TESTNET_PUBLISHER
    aggregator_url: str = TESTNET_AGGREGATOR
    epochs: int = 3
    deletable: bool = True
    max_attempts: int = 1
    retry_delay_ms: int = 1000
    host: str = "0.0.0.0"
    port: int = 39260
    max_body_bytes: int = 10 * 1024 * 1024
    request_timeout: float = 30.0
    signer_secret: Optional[str] = field(default=None, repr=False)
    keyring_service: str = "dbwalrus"
    keyring_account: str = "signer"
    persist_signer: bool = False
    log_level: str = "INFO"

    def __post_init__(self):
        if self.backend not in BACKENDS:
            raise ConfigurationError(f"backend must be one of {', '.join(BACKENDS)}")
        if self.epochs < 1:
            raise ConfigurationError("epochs must be >= 1")
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be >= 1")
        if self.retry_delay_ms < 0:
            raise ConfigurationError("retry_delay_ms must be >= 0")
        if not 0 <= self.port <= 65535:
            raise ConfigurationError("port must be between 0 and 65535")
        if not isinstance(self.storage_root, Path):
            object.__setattr__(self, "storage_root", Path(self.storage_root).expanduser())

    def override(self, **changes) -> "Settings":
        # argparse leaves unset flags as None
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def _int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be >= {minimum}")
    return value


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be positive")
    return value


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{ENV_PREFIX}{name} must be a boolean, got {raw!r}")


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the environment (``os.environ`` by default)."""
    if env is None:
        env = os.environ
    defaults = Settings()

    backend = env.get(ENV_PREFIX + "BACKEND", defaults.backend).strip().lower()
    storage_root = env.get(ENV_PREFIX + "STORAGE_ROOT")
    return Settings(
        network=env.get(ENV_PREFIX + "NETWORK", defaults.network),
        backend=backend,
        storage_root=Path(storage_root).expanduser() if storage_root else defaults.storage_root,
        publisher_url=env.get(ENV_PREFIX + "PUBLISHER_URL", defaults.publisher_url),
        aggregator_url=env.get(ENV_PREFIX + "AGGREGATOR_URL", defaults.aggregator_url),
        epochs=_int(env, "EPOCHS", defaults.epochs, minimum=1),
        deletable=_bool(env, "DELETABLE", defaults.deletable),
        max_attempts=_int(env, "MAX_ATTEMPTS", defaults.max_attempts, minimum=1),
        retry_delay_ms=_int(env, "RETRY_DELAY_MS", defaults.retry_delay_ms),
        host=env.get(ENV_PREFIX + "HOST", defaults.host),
        port=_int(env, "PORT", defaults.port),
        max_body_bytes=_int(env, "MAX_BODY_BYTES", defaults.max_body_bytes, minimum=1),
        request_timeout=_float(env, "REQUEST_TIMEOUT", defaults.request_timeout),
        signer_secret=env.get(ENV_PREFIX + "SIGNER_KEY") or None,
        keyring_service=env.get(ENV_PREFIX + "KEYRING_SERVICE", defaults.keyring_service),
        keyring_account=env.get(ENV_PREFIX + "KEYRING_ACCOUNT", defaults.keyring_account),
        persist_signer=_bool(env, "PERSIST_SIGNER", defaults.persist_signer),
        log_level=env.get(ENV_PREFIX + "LOG_LEVEL", defaults.log_level),
    )


def build_store(settings: Settings):
    if settings.backend == "walrus":
        return WalrusHttpStore(
            publisher_url=settings.publisher_url,
            aggregator_url=settings.aggregator_url,
            timeout=settings.request_timeout,
        )
    return LocalBlobStore(str(settings.storage_root))


def build_context(settings: Settings, signer=None) -> PipelineContext:
    """Create the process-wide pipeline context (store, signer, retry policy)."""
    if signer is None:
        signer = load_signer(settings)
    context = PipelineContext(
        store=build_store(settings),
        signer=signer,
        retry=RetryPolicy(max_attempts=settings.max_attempts, base_delay_ms=settings.retry_delay_ms),
        epochs=settings.epochs,
        deletable=settings.deletable,
    )
    logger.info(
        "Using %s backend on %s as %s", settings.backend, settings.network, signer.address
    )
    return context
