# quotadrop — ciclo de vida: criar, consultar, consumir download

import threading
import time
from typing import BinaryIO, Optional, Tuple

from errors import (
    AlreadyExists, BadLifespan, BadQuota, Exhausted, NotFound, StorageError, TooLarge,
)
from logger import get_logger
from storage import (
    NEVER_EXPIRES, BlobStore, FileRecord, MetadataStore, require_name, validate_name,
)

logger = get_logger(__name__)

CHUNK = 64 * 1024

# segundos em que um registro recém-criado pode ainda não ter o blob no lugar
COMMIT_GRACE = 2


def read_limited(stream: BinaryIO, limit: int) -> bytes:
    """Lê no máximo limit+1 bytes; TooLarge se passar do limite."""
    buf = bytearray()
    while len(buf) <= limit:
        chunk = stream.read(min(CHUNK, limit + 1 - len(buf)))
        if not chunk:
            break
        buf.extend(chunk)
    if len(buf) > limit:
        raise TooLarge(f"Arquivo muito grande (> {limit} bytes).")
    return bytes(buf)


class Lifecycle:
    """Mantém metadados (Redis) e bytes (disco) consistentes."""

    def __init__(self, meta: MetadataStore, blobs: BlobStore, max_upload_size: int,
                 clock=time.time):
        self.meta = meta
        self.blobs = blobs
        self.max_upload_size = max_upload_size
        self.clock = clock

    # ─────────────────────────────────────────────────────────
    # UPLOAD
    # ─────────────────────────────────────────────────────────
    def create(self, name: str, original_filename: str, lifespan: int, quota: int,
               stream: BinaryIO) -> FileRecord:
        require_name(name)
        if not (lifespan == NEVER_EXPIRES or lifespan >= 1):
            raise BadLifespan()
        if quota < 1:
            raise BadQuota()

        # Pré-checagem só reduz o desperdício; quem decide é o SET NX
        if self.meta.exists(name):
            raise AlreadyExists()

        data = read_limited(stream, self.max_upload_size)
        staged = self.blobs.stage(data)

        record = FileRecord(
            name                = name,
            original_filename   = original_filename,
            uploaded_at         = int(self.clock()),
            lifespan            = lifespan,
            remaining_downloads = quota,
            size                = len(data),
        )
        try:
            created = self.meta.add(record)
        except StorageError:
            self.blobs.discard(staged)
            raise
        if not created:
            self.blobs.discard(staged)
            logger.info("upload_lost_race", name=name)
            raise AlreadyExists()

        try:
            self.blobs.commit(staged, name)
        except StorageError:
            self.blobs.discard(staged)
            self.meta.delete(name)
            raise

        logger.info("file_created", name=name, size=record.size,
                    lifespan=lifespan, quota=quota)
        return record

    # ─────────────────────────────────────────────────────────
    # INFO
    # ─────────────────────────────────────────────────────────
    def fetch(self, name: str) -> FileRecord:
        if not validate_name(name):
            raise NotFound()
        record = self.meta.get(name)
        if record is None:
            raise NotFound()
        # TTL do Redis tem granularidade de segundo; o relógio decide
        if record.is_expired(self.clock()) or record.is_exhausted():
            raise Exhausted()
        return record

    # ─────────────────────────────────────────────────────────
    # DOWNLOAD
    # ─────────────────────────────────────────────────────────
    def consume_download(self, name: str) -> Tuple[FileRecord, BinaryIO]:
        if not validate_name(name):
            raise NotFound()
        now = self.clock()

        # Abre antes de decrementar: o download que zerar a cota pode apagar
        # o blob antes de um concorrente que já decrementou conseguir abri-lo
        try:
            stream = self.blobs.open(name)
        except StorageError:
            stream = None

        # A transação pode repetir em conflito; guarda o último snapshot
        committed = {}

        def decrement(current: Optional[FileRecord]) -> Optional[FileRecord]:
            if current is None:
                raise NotFound()
            # Expirado mas ainda presente: quem limpa é o reaper
            if current.is_exhausted() or current.is_expired(now):
                raise Exhausted()
            if stream is None:
                # SET NX já valeu mas o rename do blob ainda não aconteceu
                if now - current.uploaded_at < COMMIT_GRACE:
                    raise NotFound()
                raise StorageError(f"Arquivo ausente no disco: {name}")
            current.remaining_downloads -= 1
            committed["record"] = current
            if current.remaining_downloads == 0:
                return None
            return current

        try:
            self.meta.update(name, decrement)
        except Exception:
            if stream is not None:
                stream.close()
            raise
        record = committed["record"]
        logger.info("download_consumed", name=name, remaining=record.remaining_downloads)

        if record.remaining_downloads == 0:
            # metadado já foi apagado na transação
            self.delete_blob_later(name)
        return record, stream

    def delete_blob_later(self, name: str):
        threading.Thread(target=self.reclaim, args=(name, "quota"), daemon=True).start()

    def reclaim(self, name: str, reason: str) -> bool:
        """Apaga o blob; falhas só são logadas.

        O blob sai do lugar antes de checar o metadado: se o nome foi
        reenviado nesse meio tempo, ele volta (ou o commit novo já ocupou
        o lugar), então nunca se apaga o blob de um registro vivo.
        """
        try:
            aside = self.blobs.set_aside(name)
        except OSError as e:
            logger.error("blob_delete_failed", name=name, reason=reason, error=str(e))
            return False
        if aside is None:
            logger.warning("blob_already_gone", name=name, reason=reason)
            return False

        try:
            live = self.meta.exists(name)
        except StorageError as e:
            # sem Redis não dá para decidir; devolve e a varredura resolve depois
            logger.error("blob_reclaim_deferred", name=name, reason=reason, error=str(e))
            live = True

        if live:
            try:
                self.blobs.restore(aside, name)
            except OSError as e:
                logger.error("blob_restore_failed", name=name, reason=reason,
                             aside=str(aside), error=str(e))
                return False
            self.blobs.discard(aside)
            logger.info("blob_reclaim_skipped", name=name, reason=reason)
            return False

        self.blobs.discard(aside)
        logger.info("blob_deleted", name=name, reason=reason)
        return True

    # ─────────────────────────────────────────────────────────
    # HEALTH
    # ─────────────────────────────────────────────────────────
    def health_check(self) -> bool:
        try:
            return self.meta.ping()
        except StorageError as e:
            logger.warning("healthcheck_failed", error=str(e))
            return False

    # nomes da interface externa
    upload   = create
    get_info = fetch
    download = consume_download
