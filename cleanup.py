#!/usr/bin/env python3
"""
cleanup.py — remove do disco os arquivos cujo metadado expirou.

Em produção roda como thread dentro do app (ExpiryReaper), escutando os
keyspace events do Redis. Também pode rodar avulso para varrer órfãos,
por exemplo no cron:
  */15 * * * * /opt/quotadrop/venv/bin/python3 /opt/quotadrop/app/cleanup.py
"""
import threading
import time
from pathlib import Path
from typing import Optional

import redis

from config import Config
from lifecycle import Lifecycle
from logger import configure_logging, get_logger
from storage import BlobStore, MetadataStore, validate_name

logger = get_logger(__name__)

STAGING_MAX_AGE = 60 * 60


class ExpiryReaper:
    """Escuta `__keyevent@<db>__:expired` e apaga o blob de cada chave."""

    def __init__(self, client: redis.Redis, lifecycle: Lifecycle, channel: str,
                 configure_notifications: bool = True, poll_timeout: float = 1.0):
        self.client = client
        self.lifecycle = lifecycle
        self.channel = channel
        self.configure_notifications = configure_notifications
        self.poll_timeout = poll_timeout
        self._pubsub = None
        self._thread: Optional[threading.Thread] = None
        self._stopped = threading.Event()

    # ─────────────────────────────────────────────────────────
    # START / STOP
    # ─────────────────────────────────────────────────────────
    def start(self):
        if self._thread is not None:
            logger.warning("reaper_already_running")
            return
        if self.configure_notifications:
            self.enable_notifications()
        self._pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(self.channel)
        self._stopped.clear()
        self._thread = threading.Thread(target=self.run, name="expiry-reaper", daemon=True)
        self._thread.start()
        logger.info("reaper_started", channel=self.channel)

    def stop(self, timeout: float = 5.0):
        self._stopped.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        if self._pubsub is not None:
            self._pubsub.close()
            self._pubsub = None
        logger.info("reaper_stopped")

    def enable_notifications(self):
        # Precisa de E (keyevent) e x (expired); A já inclui x
        try:
            current = self.client.config_get("notify-keyspace-events").get("notify-keyspace-events", "")
            flags = set(current)
            if "E" in flags and ("x" in flags or "A" in flags):
                return
            flags.update("Ex")
            self.client.config_set("notify-keyspace-events", "".join(sorted(flags)))
            logger.info("keyspace_events_enabled", flags="".join(sorted(flags)))
        except redis.ResponseError as e:
            # Redis gerenciado costuma bloquear CONFIG
            logger.warning("keyspace_events_not_configured", error=str(e))

    # ─────────────────────────────────────────────────────────
    # LOOP
    # ─────────────────────────────────────────────────────────
    def run(self):
        while not self._stopped.is_set():
            try:
                message = self._pubsub.get_message(timeout=self.poll_timeout)
            except redis.RedisError as e:
                logger.error("reaper_receive_failed", error=str(e))
                self._stopped.wait(self.poll_timeout)
                continue
            if message is not None:
                self.handle(message)

    def handle(self, message) -> bool:
        if message.get("type") != "message":
            return False
        key = message.get("data")
        if isinstance(key, bytes):
            key = key.decode("utf-8", "replace")
        name = self.lifecycle.meta.name_from_key(key)
        if name is None or not validate_name(name):
            return False
        return self.lifecycle.reclaim(name, "expired")

    # ─────────────────────────────────────────────────────────
    # VARREDURA (eventos perdidos enquanto o processo estava fora)
    # ─────────────────────────────────────────────────────────
    def sweep(self, staging_max_age: int = STAGING_MAX_AGE) -> int:
        blobs = self.lifecycle.blobs
        removed = 0
        now = time.time()
        for path in blobs.entries():
            if path.name.startswith(BlobStore.STAGING_PREFIX):
                # upload em andamento, a menos que seja antigo
                try:
                    mtime = path.stat().st_mtime
                except FileNotFoundError:
                    # comitado ou descartado enquanto varríamos
                    continue
                if now - mtime > staging_max_age:
                    blobs.discard(path)
                    removed += 1
                continue
            if not path.is_file():
                continue
            if not validate_name(path.name):
                continue
            if not self.lifecycle.meta.exists(path.name):
                if self.lifecycle.reclaim(path.name, "orphan"):
                    removed += 1
        if removed:
            logger.info("sweep_done", removed=removed)
        return removed


def connect(cfg: Config) -> redis.Redis:
    return redis.Redis(
        host=cfg.redis_host,
        port=cfg.redis_port,
        password=cfg.redis_password or None,
        db=cfg.redis_db,
        decode_responses=True,
    )


def build(cfg: Config, client: redis.Redis):
    blobs = BlobStore(Path(cfg.upload_folder))
    blobs.ensure_root()
    lifecycle = Lifecycle(MetadataStore(client, cfg.key_prefix), blobs, cfg.max_upload_size)
    reaper = ExpiryReaper(client, lifecycle, cfg.expired_channel, cfg.configure_notifications)
    return lifecycle, reaper


def main():
    cfg = Config.from_env()
    configure_logging(cfg.log_level)
    _, reaper = build(cfg, connect(cfg))
    removed = reaper.sweep()
    print(f"[cleanup] {removed} arquivo(s) órfão(s) removido(s).")


if __name__ == "__main__":
    main()
