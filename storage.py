# quotadrop — armazenamento: metadados no Redis, bytes no disco

import json
import os
import re
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Optional

import redis

from errors import BadName, StorageError

# Única defesa contra path traversal: validar antes de tocar o disco
VALID_NAME_RE = re.compile(r'^[A-Za-z0-9._\-]{1,255}$')
NEVER_EXPIRES = -1


def validate_name(name) -> bool:
    return (
        isinstance(name, str)
        and bool(VALID_NAME_RE.match(name))
        and name not in (".", "..")
        and not name.startswith(BlobStore.STAGING_PREFIX)
    )


def require_name(name):
    if not validate_name(name):
        raise BadName(f"Nome inválido: {name!r}")


# ─────────────────────────────────────────────────────────────
# RECORD
# ─────────────────────────────────────────────────────────────
@dataclass
class FileRecord:
    name: str
    original_filename: str
    uploaded_at: int
    lifespan: int
    remaining_downloads: int
    size: int

    def expires_at(self) -> Optional[int]:
        if self.lifespan == NEVER_EXPIRES:
            return None
        return self.uploaded_at + self.lifespan

    def is_expired(self, now: float) -> bool:
        deadline = self.expires_at()
        return deadline is not None and now >= deadline

    def is_exhausted(self) -> bool:
        return self.remaining_downloads <= 0

    def to_dict(self) -> dict:
        return asdict(self)

    def encode(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def decode(cls, raw) -> "FileRecord":
        try:
            data = json.loads(raw)
            return cls(
                name                = str(data["name"]),
                original_filename   = str(data["original_filename"]),
                uploaded_at         = int(data["uploaded_at"]),
                lifespan            = int(data["lifespan"]),
                remaining_downloads = int(data["remaining_downloads"]),
                size                = int(data["size"]),
            )
        except (ValueError, TypeError, KeyError) as e:
            raise StorageError(f"Metadado corrompido: {e}") from e


# ─────────────────────────────────────────────────────────────
# METADATA (Redis)
# ─────────────────────────────────────────────────────────────
class MetadataStore:
    """Um registro por arquivo, TTL nativo do Redis."""

    def __init__(self, client: redis.Redis, prefix: str = ""):
        self.client = client
        self.prefix = prefix

    def key(self, name: str) -> str:
        return f"{self.prefix}{name}"

    def name_from_key(self, key: str) -> Optional[str]:
        if not key.startswith(self.prefix):
            return None
        return key[len(self.prefix):]

    def add(self, record: FileRecord) -> bool:
        """SET NX com TTL. False se a chave já existe."""
        ttl = None if record.lifespan == NEVER_EXPIRES else record.lifespan
        try:
            created = self.client.set(self.key(record.name), record.encode(), nx=True, ex=ttl)
        except redis.RedisError as e:
            raise StorageError(f"Falha ao gravar metadado: {e}") from e
        return bool(created)

    def get(self, name: str) -> Optional[FileRecord]:
        try:
            raw = self.client.get(self.key(name))
        except redis.RedisError as e:
            raise StorageError(f"Falha ao ler metadado: {e}") from e
        return None if raw is None else FileRecord.decode(raw)

    def exists(self, name: str) -> bool:
        try:
            return self.client.exists(self.key(name)) > 0
        except redis.RedisError as e:
            raise StorageError(f"Falha ao ler metadado: {e}") from e

    def replace(self, record: FileRecord) -> bool:
        # XX: não ressuscita uma chave que expirou; KEEPTTL: não reinicia o prazo
        try:
            updated = self.client.set(self.key(record.name), record.encode(), xx=True, keepttl=True)
        except redis.RedisError as e:
            raise StorageError(f"Falha ao atualizar metadado: {e}") from e
        return bool(updated)

    def delete(self, name: str) -> bool:
        try:
            return self.client.delete(self.key(name)) > 0
        except redis.RedisError as e:
            raise StorageError(f"Falha ao apagar metadado: {e}") from e

    def update(self, name: str, mutate: Callable[[FileRecord], Optional[FileRecord]]):
        """Read-modify-write atômico (WATCH/MULTI/EXEC, repete em conflito).

        `mutate` recebe o registro atual (ou None) e devolve o novo registro,
        ou None para apagar a chave. Exceções de `mutate` abortam sem escrever.
        Retorna o que `mutate` devolveu.
        """
        key = self.key(name)

        def txn(pipe):
            raw = pipe.get(key)
            current = None if raw is None else FileRecord.decode(raw)
            result = mutate(current)
            pipe.multi()
            if result is None:
                pipe.delete(key)
            else:
                pipe.set(key, result.encode(), xx=True, keepttl=True)
            return result

        try:
            return self.client.transaction(txn, key, value_from_callable=True)
        except redis.RedisError as e:
            raise StorageError(f"Falha na transação: {e}") from e

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            raise StorageError(str(e)) from e


# ─────────────────────────────────────────────────────────────
# BLOBS (disco)
# ─────────────────────────────────────────────────────────────
class BlobStore:
    """Um arquivo por nome dentro de `root`."""

    STAGING_PREFIX = ".staging-"

    def __init__(self, root: Path):
        self.root = Path(root)

    def ensure_root(self):
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Path:
        require_name(name)
        return self.root / name

    def stage(self, data: bytes) -> Path:
        """Grava os bytes num arquivo temporário no mesmo diretório."""
        try:
            fd, tmp = tempfile.mkstemp(dir=self.root, prefix=self.STAGING_PREFIX, suffix=".part")
            with os.fdopen(fd, "wb") as out:
                out.write(data)
        except OSError as e:
            raise StorageError(f"Falha ao salvar arquivo: {e}") from e
        return Path(tmp)

    def commit(self, staged: Path, name: str) -> Path:
        dest = self.path_for(name)
        try:
            os.replace(staged, dest)
        except OSError as e:
            raise StorageError(f"Falha ao mover arquivo: {e}") from e
        return dest

    def discard(self, staged: Path):
        Path(staged).unlink(missing_ok=True)

    def write(self, name: str, data: bytes) -> int:
        self.commit(self.stage(data), name)
        return len(data)

    def open(self, name: str):
        try:
            return open(self.path_for(name), "rb")
        except OSError as e:
            raise StorageError(f"Arquivo ausente no disco: {name}") from e

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_file()

    def entries(self):
        return list(self.root.iterdir())

    def set_aside(self, name: str) -> Optional[Path]:
        """Move o blob para um nome de staging. None se já não existia."""
        src = self.path_for(name)
        fd, tmp = tempfile.mkstemp(dir=self.root, prefix=self.STAGING_PREFIX, suffix=".trash")
        os.close(fd)
        try:
            os.replace(src, tmp)
        except FileNotFoundError:
            Path(tmp).unlink(missing_ok=True)
            return None
        return Path(tmp)

    def restore(self, aside: Path, name: str) -> bool:
        """Devolve o blob ao lugar sem sobrescrever um commit mais novo."""
        try:
            os.link(aside, self.path_for(name))
        except FileExistsError:
            return False
        return True

    def delete(self, name: str) -> bool:
        """True se apagou, False se já não existia."""
        try:
            self.path_for(name).unlink()
        except FileNotFoundError:
            return False
        return True
