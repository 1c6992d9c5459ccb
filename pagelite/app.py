import base64
import binascii
import dataclasses
import logging
import re
import sys
import uuid
from contextlib import contextmanager
from datetime import datetime
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from secrets import compare_digest
from typing import Any, Callable, Iterator, Optional

from flask import (
    Flask,
    Request,
    Response,
    abort,
    current_app,
    g,
    has_request_context,
    jsonify,
    render_template,
    request,
    send_file,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import BadRequest, RequestEntityTooLarge
from werkzeug.formparser import FormDataParser

from .config import ConfigurationError, Credentials, DEFAULT_REALM, Settings, load_settings
from .storage import (
    InvalidUploadName,
    ResolutionKind,
    UploadPlacementError,
    ensure_storage_root,
    list_all_files,
    list_directory,
    resolve_request_path,
    store_upload,
)

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
SETTINGS_KEY = "PAGELITE_SETTINGS"
UPLOAD_PATH = "/upload"
UPLOAD_ROUTE_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")

AUTH_FAILURE_MESSAGES = {
    "missing_header": "Unauthorized",
    "malformed_header": "Invalid authentication format",
    "invalid_encoding": "Invalid authentication credentials",
    "malformed_credentials": "Invalid authentication credentials",
    "invalid_credentials": "Invalid username or password",
}


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)


lifecycle_logger = RequestAwareLogger(logging.getLogger("pagelite.lifecycle"))
security_logger = RequestAwareLogger(logging.getLogger("pagelite.security"))
startup_logger = logging.getLogger("pagelite.startup")


def configure_logging(settings: Settings) -> Path:
    """Set the log level and attach a rotating file handler for application logs."""

    numeric_level = getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    logging.getLogger("pagelite").setLevel(numeric_level)

    settings.logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = settings.logs_dir / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter(LOG_FORMAT)

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


class StrictFormDataParser(FormDataParser):
    """Form parser that raises on a malformed body instead of returning an empty form."""

    def __init__(self, *args, **kwargs) -> None:
        kwargs["silent"] = False
        super().__init__(*args, **kwargs)


class ArchiveRequest(Request):
    form_data_parser_class = StrictFormDataParser


def get_settings() -> Settings:
    return current_app.config[SETTINGS_KEY]


def upload_response(success: bool, filename: str, message: str, status: int) -> Response:
    response = jsonify({"success": success, "filename": filename, "message": message})
    response.status_code = status
    return response


class BasicAuthGate:
    """Guard views behind a single static HTTP Basic credential pair."""

    def __init__(self, credentials: Credentials, realm: str = DEFAULT_REALM) -> None:
        self._username = credentials.username.encode("utf-8")
        self._password = credentials.password.encode("utf-8")
        self.realm = realm

    def check(self, header: Optional[str]) -> Optional[str]:
        """Return ``None`` if *header* carries the expected credentials, else a failure reason."""

        if not header:
            return "missing_header"

        scheme, _, encoded = header.strip().partition(" ")
        encoded = encoded.strip()
        if scheme.lower() != "basic" or not encoded:
            return "malformed_header"

        try:
            decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
        except (binascii.Error, ValueError):
            return "invalid_encoding"

        username, separator, password = decoded.partition(":")
        if not separator:
            return "malformed_credentials"

        # Both comparisons always run.
        username_matches = compare_digest(username.encode("utf-8"), self._username)
        password_matches = compare_digest(password.encode("utf-8"), self._password)
        if not (username_matches and password_matches):
            return "invalid_credentials"
        return None

    def is_authenticated(self) -> bool:
        return self.check(request.headers.get("Authorization")) is None

    def challenge(self, message: str) -> Response:
        response = upload_response(False, "", message, 401)
        response.headers["WWW-Authenticate"] = f'Basic realm="{self.realm}"'
        return response

    def require(self, view: Callable) -> Callable:
        @wraps(view)
        def wrapped(*args, **kwargs):
            reason = self.check(request.headers.get("Authorization"))
            if reason is not None:
                security_logger.warning(
                    "auth_failed reason=%s endpoint=%s ip=%s",
                    reason,
                    request.endpoint,
                    request.remote_addr or "unknown",
                )
                return self.challenge(AUTH_FAILURE_MESSAGES[reason])
            return view(*args, **kwargs)

        return wrapped


def _close_stream_safely(stream: Any, context: str) -> None:
    """Close an upload/input stream while logging failures."""

    if stream is None or not hasattr(stream, "close"):
        return

    try:
        stream.close()
    except OSError as error:
        lifecycle_logger.warning(
            "stream_close_failed context=%s error=%s",
            context,
            sanitize_log_value(str(error)),
        )


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        _close_stream_safely(
            getattr(file_storage, "stream", None),
            f"upload_stream_handler filename={sanitize_log_value(file_storage.filename or 'unknown')}",
        )


def upload():
    if request.method != "POST":
        abort(405, valid_methods=["POST"])

    settings = get_settings()

    if request.mimetype != "multipart/form-data":
        lifecycle_logger.warning(
            "upload_failed reason=not_multipart content_type=%s",
            sanitize_log_value(request.content_type or ""),
        )
        return upload_response(
            False, "", "Failed to parse form: request Content-Type isn't multipart/form-data", 400
        )
    if not request.mimetype_params.get("boundary"):
        lifecycle_logger.warning("upload_failed reason=missing_boundary")
        return upload_response(False, "", "Failed to parse form: missing multipart boundary", 400)

    try:
        files = request.files
        form = request.form
    except RequestEntityTooLarge:
        lifecycle_logger.warning(
            "upload_failed reason=too_large limit=%d content_length=%s",
            settings.max_upload_bytes,
            request.content_length,
        )
        return upload_response(
            False,
            "",
            f"Failed to parse form: request body too large (limit {settings.max_upload_bytes} bytes)",
            400,
        )
    except (BadRequest, ValueError) as error:
        detail = getattr(error, "description", None) or str(error)
        lifecycle_logger.warning(
            "upload_failed reason=parse_error error=%s",
            sanitize_log_value(detail),
        )
        return upload_response(False, "", f"Failed to parse form: {detail}", 400)

    if not files and not form:
        lifecycle_logger.warning("upload_failed reason=parse_error error=no_parts")
        return upload_response(
            False, "", "Failed to parse form: no multipart parts found in body", 400
        )

    file_storage = files.get("file")
    if file_storage is None:
        lifecycle_logger.warning("upload_failed reason=no_file_part")
        return upload_response(False, "", "Failed to get file: no 'file' field in form", 400)
    if not file_storage.filename:
        lifecycle_logger.warning("upload_failed reason=no_filename")
        return upload_response(False, "", "Failed to get file: file has no filename", 400)

    lifecycle_logger.info(
        "upload_received filename=%s title=%s url=%s timestamp=%s",
        sanitize_log_value(file_storage.filename),
        sanitize_log_value(form.get("title", "")),
        sanitize_log_value(form.get("url", "")),
        sanitize_log_value(form.get("timestamp", "")),
    )

    with upload_stream_handler(file_storage) as upload_file:
        try:
            artifact = store_upload(
                settings.storage_root,
                upload_file.stream,
                upload_file.filename,
                timestamp=form.get("timestamp"),
            )
        except InvalidUploadName as error:
            lifecycle_logger.warning(
                "upload_failed reason=invalid_filename filename=%s detail=%s",
                sanitize_log_value(file_storage.filename),
                error,
            )
            return upload_response(False, "", f"Invalid filename: {error}", 400)
        except UploadPlacementError as error:
            lifecycle_logger.error(
                "upload_failed reason=%s filename=%s detail=%s",
                error.stage,
                sanitize_log_value(file_storage.filename),
                sanitize_log_value(error.message),
            )
            return upload_response(False, "", error.message, 500)

    lifecycle_logger.info(
        "upload_saved filename=%s year=%s size_kb=%.2f",
        sanitize_log_value(artifact.name),
        artifact.year,
        artifact.size_bytes / 1024,
    )
    return upload_response(True, artifact.name, "Upload successful", 200)


def browse(subpath: str = ""):
    settings = get_settings()
    url_path = request.path
    resolution = resolve_request_path(settings.storage_root, url_path)

    if resolution.kind is ResolutionKind.NOT_FOUND:
        if resolution.reason == "outside_root":
            security_logger.warning(
                "path_traversal_attempt path=%s ip=%s",
                sanitize_log_value(url_path),
                request.remote_addr or "unknown",
            )
        else:
            lifecycle_logger.info(
                "path_not_found path=%s reason=%s",
                sanitize_log_value(url_path),
                resolution.reason,
            )
        abort(404)

    if resolution.kind is ResolutionKind.FILE:
        lifecycle_logger.info("file_served path=%s", sanitize_log_value(url_path))
        try:
            return send_file(resolution.path, as_attachment=False, conditional=True)
        except FileNotFoundError:
            lifecycle_logger.warning(
                "file_missing_race path=%s", sanitize_log_value(url_path)
            )
            abort(404)

    if resolution.kind is ResolutionKind.AGGREGATE_INDEX:
        try:
            files = list_all_files(settings.storage_root)
        except OSError:
            lifecycle_logger.exception("index_failed view=all")
            abort(500)
        return render_template(
            "all_files.html",
            files=files,
            count=len(files),
            generated=datetime.now(),
        )

    try:
        items = list_directory(
            resolution.path, settings.directory_order, root=settings.storage_root
        )
    except OSError:
        lifecycle_logger.exception("index_failed path=%s", sanitize_log_value(url_path))
        abort(500)

    is_root = resolution.path == settings.storage_root
    if is_root:
        display_path = "/"
    else:
        display_path = f"/{resolution.path.relative_to(settings.storage_root).as_posix()}/"
    return render_template(
        "dir_index.html",
        path=display_path,
        is_root=is_root,
        items=items,
        count=len(items),
        generated=datetime.now(),
    )


def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d size=%s",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
        response.content_length or 0,
    )
    return response


def add_response_headers(response: Response):
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    request_id = getattr(g, "request_id", None)
    if request_id:
        response.headers["X-Request-ID"] = request_id
    return response


def not_found(error):
    return render_template("404.html"), 404


def internal_error(error):
    return Response("Failed to generate index page", status=500, mimetype="text/plain")


def handle_file_too_large(error):
    if request.path == UPLOAD_PATH:
        return upload_response(False, "", "Failed to parse form: request body too large", 400)
    return Response("Request body too large", status=413, mimetype="text/plain")


def handle_rate_limit(error):
    description = getattr(error, "description", "Too many requests")
    if request.path == UPLOAD_PATH:
        return upload_response(False, "", f"Rate limit exceeded: {description}", 429)
    return Response("Too many requests", status=429, mimetype="text/plain")


def human_datetime(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M")


def create_app(settings: Optional[Settings] = None) -> Flask:
    """Build the Flask application around an immutable :class:`Settings` value."""

    if settings is None:
        settings = load_settings()

    storage_root = ensure_storage_root(settings.storage_root)
    if storage_root != settings.storage_root:
        settings = dataclasses.replace(settings, storage_root=storage_root)
    configure_logging(settings)

    app = Flask(__name__, static_folder=None)
    app.request_class = ArchiveRequest
    app.config[SETTINGS_KEY] = settings
    app.config["MAX_CONTENT_LENGTH"] = settings.max_upload_bytes

    limiter = Limiter(
        key_func=get_remote_address,
        app=app,
        default_limits=[],
        storage_uri=settings.rate_limit_storage_uri,
    )
    gate = BasicAuthGate(settings.credentials, settings.realm)
    upload_limit = limiter.limit(
        settings.upload_rate_limit,
        exempt_when=lambda: not gate.is_authenticated(),
    )

    app.add_url_rule(
        UPLOAD_PATH,
        endpoint="upload",
        view_func=gate.require(upload_limit(upload)),
        methods=UPLOAD_ROUTE_METHODS,
    )
    app.add_url_rule("/", endpoint="browse", view_func=browse, defaults={"subpath": ""})
    app.add_url_rule("/<path:subpath>", endpoint="browse", view_func=browse)

    app.before_request(add_request_id)
    app.after_request(log_request_completion)
    app.after_request(add_response_headers)

    app.register_error_handler(404, not_found)
    app.register_error_handler(413, handle_file_too_large)
    app.register_error_handler(429, handle_rate_limit)
    app.register_error_handler(500, internal_error)
    app.add_template_filter(human_datetime, "human_datetime")

    return app


def main() -> None:
    try:
        settings = load_settings()
    except ConfigurationError as error:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        logging.getLogger("pagelite.config").critical("%s", error)
        sys.exit(1)

    try:
        app = create_app(settings)
    except OSError as error:
        logging.getLogger("pagelite.config").critical(
            "Failed to create data directory: %s", error
        )
        sys.exit(1)

    settings = app.config[SETTINGS_KEY]
    startup_logger.info("PageLite server starting")
    startup_logger.info("Listening on %s:%d", settings.host, settings.port)
    startup_logger.info("Username: %s", settings.credentials.username)
    startup_logger.info("Password: %s", settings.masked_password())
    startup_logger.info("Max upload: %d MB", settings.max_upload_mb)
    startup_logger.info("Storage directory: %s", settings.storage_root)
    startup_logger.info("Ready")

    app.run(host=settings.host, port=settings.port, debug=False, threaded=True)


if __name__ == "__main__":
    main()
