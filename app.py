import os, io
from flask import Flask, Blueprint, current_app, request, jsonify, send_file, g
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime, timezone
from apscheduler.schedulers.background import BackgroundScheduler
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from functools import wraps

from config import Config
from models import db, utcnow, iso
from stores import get_storage, sqlalchemy_storage
from utils import (
    PaperTrailError, ValidationError, AuthenticationError, NotFoundError,
    ConflictError, GoneError, PayloadTooLargeError,
    categorize_document, allowed, parse_timestamp,
    generate_token, verify_token, bearer_token,
    encryption_key, encrypt_bytes, stored_name_for, save_file_bytes, read_document_bytes,
    audit, expire_permissions, share_notification,
)

EXPIRY_POLICIES = {"none", "on_read", "sweep"}

api = Blueprint("api", __name__, url_prefix="/api")


# ==========================================================
# 🔒 HELPER FUNCTIONS
# ==========================================================
def request_data():
    """JSON body if one was sent, form fields otherwise."""
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else request.form


def required_strings(data, *names):
    """Values of ``names`` from ``data``; ValidationError unless all are non-empty strings."""
    values = [data.get(name) for name in names]
    if not all(isinstance(v, str) and v for v in values):
        raise ValidationError("Missing required fields")
    return values


def token_required(func):
    """Resolves the bearer token to a user and passes it as the first argument."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        token = bearer_token()
        if not token:
            raise AuthenticationError("Access token required")
        storage = get_storage()
        claims = verify_token(token)
        if claims is None or storage.tokens.is_revoked(claims["jti"]):
            raise AuthenticationError("Invalid or expired token", 403)
        user = storage.users.get(claims["userId"])
        if user is None:
            raise AuthenticationError("Invalid or expired token", 403)
        g.token_claims = claims
        return func(user, *args, **kwargs)
    return wrapper


def document_file_response(doc, data):
    return send_file(
        io.BytesIO(data),
        mimetype=doc.mime_type or "application/octet-stream",
        as_attachment=True,
        download_name=doc.original_name,
    )


# ==========================================================
# 🚪 AUTHENTICATION ROUTES
# ==========================================================
@api.route("/auth/register", methods=["POST"])
def register():
    email, password, first_name, last_name = required_strings(
        request_data(), "email", "password", "firstName", "lastName")

    storage = get_storage()
    if storage.users.find_by_email(email):
        raise ConflictError("User already exists")

    user = storage.users.create(
        email=email,
        password_hash=generate_password_hash(password),
        first_name=first_name,
        last_name=last_name,
    )
    storage.commit()
    current_app.logger.info("Registered user %s", user.id)
    return jsonify({"user": user.to_dict(), "token": generate_token(user.id)}), 201


@api.route("/auth/login", methods=["POST"])
def login():
    data = request_data()
    email = data.get("email")
    password = data.get("password")

    if not isinstance(email, str) or not isinstance(password, str):
        email = password = None
    user = get_storage().users.find_by_email(email) if email else None
    # same answer for unknown email and wrong password
    if not user or not password or not check_password_hash(user.password_hash, password):
        raise AuthenticationError("Invalid credentials")

    return jsonify({"user": user.to_dict(), "token": generate_token(user.id)})


@api.route("/auth/logout", methods=["POST"])
@token_required
def logout(user):
    claims = g.token_claims
    expires_at = datetime.fromtimestamp(claims["exp"], tz=timezone.utc).replace(tzinfo=None)
    storage = get_storage()
    storage.tokens.revoke(claims["jti"], expires_at=expires_at)
    storage.commit()
    return jsonify({"message": "logged out"})


# ==========================================================
# 📁 DOCUMENT MANAGEMENT ROUTES
# ==========================================================
@api.route("/documents/upload", methods=["POST"])
@token_required
def upload(user):
    cfg = current_app.config
    file = request.files.get("document")
    if file is None or not file.filename:
        raise ValidationError("No file uploaded")

    if not allowed(file.filename):
        raise ValidationError("Invalid file type. Only PDF, DOC, DOCX, CSV, and TXT files are allowed.")

    raw = file.read()
    if len(raw) > cfg["MAX_UPLOAD_BYTES"]:
        raise PayloadTooLargeError("File too large")

    data = request.form
    tax_year = data.get("taxYear")
    if tax_year:
        try:
            tax_year = int(tax_year)
        except ValueError:
            raise ValidationError("taxYear must be a whole number")
    else:
        tax_year = None

    auto_category, auto_subcategory = categorize_document(file.filename)

    stored_name = stored_name_for(file.filename)
    stored_path = os.path.join(cfg["UPLOAD_FOLDER"], stored_name)
    nonce_b64 = None
    key = encryption_key()
    if key:
        nonce_b64, raw_out = encrypt_bytes(key, raw)
    else:
        raw_out = raw
    save_file_bytes(stored_path, raw_out)

    storage = get_storage()
    try:
        doc = storage.documents.create(
            owner_id=user.id,
            filename=stored_name,
            original_name=file.filename,
            file_size=len(raw),
            mime_type=file.mimetype,
            storage_path=stored_path,
            category=data.get("category") or auto_category,
            subcategory=data.get("subcategory") or auto_subcategory,
            tax_year=tax_year,
            description=data.get("description") or "",
            nonce_b64=nonce_b64,
        )
        audit(storage, doc.id, "upload", user_id=user.id, accessed_by_name="You")
        storage.commit()
    except Exception:
        # no document row, no file on disk
        if os.path.exists(stored_path):
            os.remove(stored_path)
        raise
    current_app.logger.info("User %s uploaded %s as %s/%s", user.id, doc.id, doc.category, doc.subcategory)
    return jsonify(doc.to_dict()), 201


@api.route("/documents", methods=["GET"])
@token_required
def list_documents(user):
    storage = get_storage()
    docs = storage.documents.list_by_owner(user.id)

    if current_app.config["PERMISSION_EXPIRY_POLICY"] == "on_read":
        closed = sum(expire_permissions(storage, document_id=doc.id) for doc in docs)
        if closed:
            storage.commit()

    result = []
    for doc in docs:
        item = doc.to_dict()
        item["sharedWith"] = [p.to_dict() for p in storage.permissions.list_by_document(doc.id, active_only=True)]
        result.append(item)
    return jsonify(result)


@api.route("/documents/<doc_id>/share", methods=["POST"])
@token_required
def share(user, doc_id):
    storage = get_storage()
    doc = storage.documents.get_owned(doc_id, user.id)
    if not doc:
        raise NotFoundError("Document not found")

    data = request_data()
    email, name, role = required_strings(data, "grantedToEmail", "grantedToName", "role")

    expires_at = data.get("expiresAt")
    if expires_at:
        try:
            expires_at = parse_timestamp(expires_at)
        except (TypeError, ValueError):
            raise ValidationError("expiresAt must be an ISO-8601 timestamp")
    else:
        expires_at = None

    perm = storage.permissions.create(
        document_id=doc.id,
        granted_by=user.id,
        granted_to_email=email,
        granted_to_name=name,
        role=role,
        expires_at=expires_at,
        is_active=True,
    )
    audit(storage, doc.id, "share", user_id=user.id, accessed_by_name="You",
          metadata={"sharedWith": email, "role": role})
    storage.commit()

    current_app.logger.info("Sending share notification to %s for document %s", email, doc.id)
    share_notification(doc, perm, user)
    return jsonify(perm.to_dict()), 201


@api.route("/documents/<doc_id>/share/<permission_id>", methods=["DELETE"])
@token_required
def revoke_share(user, doc_id, permission_id):
    storage = get_storage()
    doc = storage.documents.get_owned(doc_id, user.id)
    if not doc:
        raise NotFoundError("Document not found")

    perm = storage.permissions.get(permission_id)
    if perm is None or perm.document_id != doc.id:
        raise NotFoundError("Permission not found")

    if perm.is_active:
        storage.permissions.deactivate(perm)
        audit(storage, doc.id, "revoke", user_id=user.id, accessed_by_name="You",
              metadata={"revokedFrom": perm.granted_to_email, "role": perm.role})
        storage.commit()
        current_app.logger.info("User %s revoked permission %s", user.id, perm.id)
    return jsonify(perm.to_dict())


@api.route("/documents/<doc_id>/audit", methods=["GET"])
@token_required
def audit_trail(user, doc_id):
    storage = get_storage()
    doc = storage.documents.get_owned(doc_id, user.id)
    if not doc:
        raise NotFoundError("Document not found")
    return jsonify([entry.to_dict() for entry in storage.audit.list_by_document(doc.id)])


@api.route("/documents/<doc_id>/download", methods=["GET"])
@token_required
def download(user, doc_id):
    storage = get_storage()
    doc = storage.documents.get_owned(doc_id, user.id)
    if not doc:
        raise NotFoundError("Document not found")
    data = read_document_bytes(doc)
    audit(storage, doc.id, "download", user_id=user.id, accessed_by_name="You")
    storage.commit()
    return document_file_response(doc, data)


@api.route("/shared/<access_token>", methods=["GET"])
def shared_document(access_token):
    """Grantee access; the share's access token is the only credential."""
    storage = get_storage()
    perm = storage.permissions.find_by_access_token(access_token)
    if perm is None or not perm.is_active:
        raise NotFoundError("Share link not found")
    if perm.is_expired():
        raise GoneError("Share link has expired")
    doc = storage.documents.get(perm.document_id)
    if doc is None:
        raise NotFoundError("Share link not found")

    data = read_document_bytes(doc)
    audit(storage, doc.id, "view",
          accessed_by_email=perm.granted_to_email,
          accessed_by_name=perm.granted_to_name,
          metadata={"permissionId": perm.id, "role": perm.role})
    storage.commit()
    return document_file_response(doc, data)


@api.route("/health", methods=["GET"])
def health():
    return jsonify({
        "status": "healthy",
        "timestamp": iso(utcnow()),
        "version": current_app.config["VERSION"],
    })


# ==========================================================
# ⚠️ ERROR HANDLERS
# ==========================================================
HTTP_ERROR_MESSAGES = {
    404: "Endpoint not found",
    405: "Method not allowed",
    413: "File too large",
    429: "Too many requests, please try again later.",
}


def rollback_request_storage():
    if "storage" in g:
        g.storage.rollback()


def handle_app_error(err):
    rollback_request_storage()
    return jsonify({"error": err.message}), err.status_code


def handle_http_error(err):
    return jsonify({"error": HTTP_ERROR_MESSAGES.get(err.code, err.name)}), err.code


def handle_unexpected_error(err):
    rollback_request_storage()
    current_app.logger.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify({"error": "Internal server error"}), 500


def add_security_headers(response):
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    return response


# ==========================================================
# ⏰ PERMISSION EXPIRY SWEEP
# ==========================================================
def run_expiry_sweep(app):
    with app.app_context():
        storage = get_storage()
        closed = expire_permissions(storage)
        pruned = storage.tokens.prune_expired()
        storage.commit()
        if closed or pruned:
            app.logger.info("Expiry sweep deactivated %d permission(s), pruned %d revoked token(s)", closed, pruned)
        return closed


def start_expiry_scheduler(app):
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        run_expiry_sweep, "interval", args=[app],
        minutes=app.config["EXPIRY_SWEEP_MINUTES"],
        id="expiry_sweep", replace_existing=True,
    )
    scheduler.start()
    app.extensions["scheduler"] = scheduler
    return scheduler


# ==========================================================
# ⚙️ APP SETUP
# ==========================================================
def create_app(overrides=None, storage_factory=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)
    # leave room for the multipart envelope around the file itself
    if not app.config.get("MAX_CONTENT_LENGTH"):
        app.config["MAX_CONTENT_LENGTH"] = app.config["MAX_UPLOAD_BYTES"] + 64 * 1024
    if app.config["PERMISSION_EXPIRY_POLICY"] not in EXPIRY_POLICIES:
        raise ValueError(
            f"PERMISSION_EXPIRY_POLICY must be one of {sorted(EXPIRY_POLICIES)}, "
            f"got {app.config['PERMISSION_EXPIRY_POLICY']!r}"
        )

    app.logger.setLevel(app.config["LOG_LEVEL"].upper())
    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)

    db.init_app(app)
    app.extensions["storage_factory"] = storage_factory or sqlalchemy_storage
    with app.app_context():
        db.create_all()

    CORS(app, resources={r"/api/*": {"origins": app.config["FRONTEND_URL"]}}, supports_credentials=True)
    # one budget per client across every endpoint
    Limiter(
        get_remote_address,
        app=app,
        application_limits=[app.config["RATE_LIMIT"]],
        storage_uri=app.config["RATELIMIT_STORAGE_URI"],
    )

    app.register_blueprint(api)
    app.register_error_handler(PaperTrailError, handle_app_error)
    app.register_error_handler(HTTPException, handle_http_error)
    app.register_error_handler(Exception, handle_unexpected_error)
    app.after_request(add_security_headers)

    if app.config["PERMISSION_EXPIRY_POLICY"] == "sweep" and not app.config.get("TESTING"):
        start_expiry_scheduler(app)

    return app


if __name__ == "__main__":
    app = create_app()
    print("📄 PaperTrail config:")
    print("DATABASE =", app.config["SQLALCHEMY_DATABASE_URI"])
    print("UPLOAD_FOLDER =", app.config["UPLOAD_FOLDER"])
    print("EXPIRY_POLICY =", app.config["PERMISSION_EXPIRY_POLICY"])
    print("SMTP_HOST =", app.config["SMTP_HOST"])
    print(f"🚀 PaperTrail API server running on port {app.config['PORT']}")
    app.run(host="0.0.0.0", port=app.config["PORT"])
