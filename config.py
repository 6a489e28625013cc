# quotadrop — configuração via variáveis de ambiente

import os
from dataclasses import dataclass
from pathlib import Path


class ConfigError(Exception):
    """Configuração inválida; o processo não deve subir."""


_TRUE  = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _int(env, key, default):
    raw = env.get(key, str(default)).strip()
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} precisa ser inteiro, recebido {raw!r}") from None


def _bool(env, key, default):
    raw = env.get(key, "1" if default else "0").strip().lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ConfigError(f"{key} precisa ser booleano, recebido {raw!r}")


@dataclass(frozen=True)
class Config:
    upload_folder: Path     = Path("./upload")
    listen_host: str        = "127.0.0.1"
    listen_port: int        = 8080
    redis_host: str         = "127.0.0.1"
    redis_port: int         = 6379
    redis_password: str     = ""
    redis_db: int           = 0
    key_prefix: str         = ""
    max_upload_size: int    = 2 * 1024 * 1024   # 2 MiB
    configure_notifications: bool = True
    ratelimit_storage_uri: str = "memory://"
    upload_rate_limit: str  = "20 per hour"
    log_level: str          = "info"

    @classmethod
    def from_env(cls, env=None) -> "Config":
        env = os.environ if env is None else env
        cfg = cls(
            upload_folder  = Path(env.get("UPLOAD_FOLDER", "./upload")),
            listen_host    = env.get("LISTEN_HOST", "127.0.0.1"),
            listen_port    = _int(env, "LISTEN_PORT", 8080),
            redis_host     = env.get("REDIS_HOST", "127.0.0.1"),
            redis_port     = _int(env, "REDIS_PORT", 6379),
            redis_password = env.get("REDIS_PASSWORD", ""),
            redis_db       = _int(env, "REDIS_DB", 0),
            key_prefix     = env.get("KEY_PREFIX", ""),
            max_upload_size = _int(env, "MAX_UPLOAD_SIZE", 2 * 1024 * 1024),
            configure_notifications = _bool(env, "CONFIGURE_NOTIFICATIONS", True),
            ratelimit_storage_uri = env.get("RATELIMIT_STORAGE_URI", "memory://"),
            upload_rate_limit = env.get("UPLOAD_RATE_LIMIT", "20 per hour"),
            log_level      = env.get("LOG_LEVEL", "info").lower(),
        )
        if cfg.max_upload_size < 1:
            raise ConfigError("MAX_UPLOAD_SIZE precisa ser >= 1")
        if cfg.redis_db < 0:
            raise ConfigError("REDIS_DB não pode ser negativo")
        return cfg

    @property
    def expired_channel(self) -> str:
        # canal de keyspace events do Redis para chaves expiradas neste DB
        return f"__keyevent@{self.redis_db}__:expired"
