# quotadrop — upload com prazo e cota de downloads
# Metadados no Redis (TTL nativo), bytes no disco, reaper ouvindo expirações.

import mimetypes

from flask import Flask, jsonify, request, send_file
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from cleanup import build, connect
from config import Config, ConfigError
from errors import (
    AlreadyExists, DropError, InvalidInput, NotFound, StorageError, TooLarge,
)
from lifecycle import Lifecycle
from logger import configure_logging, get_logger
from storage import NEVER_EXPIRES

logger = get_logger(__name__)

# folga para o overhead do multipart acima do limite do arquivo
MULTIPART_OVERHEAD = 64 * 1024

ERROR_STATUS = (
    (InvalidInput,  400),
    (NotFound,      404),
    (AlreadyExists, 409),
    (TooLarge,      413),
    (StorageError,  500),
)


def error_response(exc: DropError):
    for cls, status in ERROR_STATUS:
        if isinstance(exc, cls):
            break
    else:
        status = 500
    if status >= 500:
        logger.error("request_failed", path=request.path, error=str(exc))
    return jsonify({"error": str(exc)}), status


def int_field(form, key, default):
    raw = form.get(key, "").strip()
    if raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidInput(f"Campo '{key}' precisa ser inteiro.") from None


def create_app(cfg: Config, lifecycle: Lifecycle) -> Flask:
    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = cfg.max_upload_size + MULTIPART_OVERHEAD
    app.extensions["lifecycle"] = lifecycle

    # ─────────────────────────────────────────────────────────
    # RATE LIMIT
    # ─────────────────────────────────────────────────────────
    limiter = Limiter(get_remote_address, app=app,
                      default_limits=["300/day", "60/minute"],
                      storage_uri=cfg.ratelimit_storage_uri)

    # ─────────────────────────────────────────────────────────
    # HEADERS DE SEGURANÇA
    # ─────────────────────────────────────────────────────────
    @app.after_request
    def security_headers(response):
        response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"
        response.headers["X-Content-Type-Options"]    = "nosniff"
        response.headers["X-Frame-Options"]           = "DENY"
        response.headers["Referrer-Policy"]           = "no-referrer"
        response.headers.pop("Server", None)
        return response

    # ─────────────────────────────────────────────────────────
    # ROTAS
    # ─────────────────────────────────────────────────────────
    @app.route("/upload", methods=["POST"])
    @limiter.limit(cfg.upload_rate_limit)
    def upload():
        name = request.form.get("name", "")
        f = request.files.get("file")
        if not name or f is None:
            return jsonify({"error": "Campos 'name' e 'file' são obrigatórios."}), 400
        try:
            lifespan = int_field(request.form, "life", NEVER_EXPIRES)
            quota    = int_field(request.form, "quota", 1)
            record = lifecycle.upload(name, f.filename or name, lifespan, quota, f.stream)
        except DropError as e:
            return error_response(e)
        return jsonify(record.to_dict())

    @app.route("/info/<name>")
    def info(name):
        try:
            record = lifecycle.get_info(name)
        except DropError as e:
            return error_response(e)
        return jsonify(record.to_dict())

    # ?dl=1 fica a cargo do front; aqui cada GET consome uma unidade da cota
    @app.route("/download/<name>")
    def download(name):
        try:
            record, stream = lifecycle.download(name)
        except DropError as e:
            return error_response(e)
        mime = mimetypes.guess_type(record.original_filename)[0] or "application/octet-stream"
        return send_file(stream, mimetype=mime,
                         as_attachment=True,
                         download_name=record.original_filename)

    @app.route("/healthcheck")
    def healthcheck():
        if not lifecycle.health_check():
            return jsonify({"redis": "unavailable"}), 503
        return jsonify({"redis": "ok"})

    # ─────────────────────────────────────────────────────────
    # ERROR HANDLERS
    # ─────────────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Não encontrado."}), 404

    @app.errorhandler(405)
    def not_allowed(e):
        return jsonify({"error": "Método não permitido."}), 405

    @app.errorhandler(413)
    def too_large(e):
        return jsonify({"error": f"Arquivo muito grande. Limite: {cfg.max_upload_size} bytes."}), 413

    @app.errorhandler(429)
    def rate_limit(e):
        return jsonify({"error": "Muitas requisições."}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Erro interno."}), 500

    return app


def main():
    try:
        cfg = Config.from_env()
    except ConfigError as e:
        raise SystemExit(f"Configuração inválida: {e}")
    configure_logging(cfg.log_level)

    client = connect(cfg)
    lifecycle, reaper = build(cfg, client)
    reaper.start()
    # o que expirou enquanto estávamos fora não gera evento
    reaper.sweep()

    app = create_app(cfg, lifecycle)
    logger.info("server_starting", host=cfg.listen_host, port=cfg.listen_port,
                upload_folder=str(cfg.upload_folder))
    try:
        app.run(host=cfg.listen_host, port=cfg.listen_port, threaded=True)
    finally:
        reaper.stop()
        client.close()


if __name__ == "__main__":
    main()
