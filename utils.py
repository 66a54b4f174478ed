import os
import base64
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from email.utils import formataddr
from datetime import datetime, timedelta, timezone

import jwt
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from flask import current_app, request

from models import new_id


# ==========================================================
# ❗ ERRORS
# ==========================================================
class PaperTrailError(Exception):
    """Base error; rendered as ``{"error": message}`` with ``status_code``."""
    status_code = 500

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(PaperTrailError):
    status_code = 400


class AuthenticationError(PaperTrailError):
    """Missing credentials (401) or a token that fails verification (403)."""
    status_code = 401


class NotFoundError(PaperTrailError):
    status_code = 404


class ConflictError(PaperTrailError):
    status_code = 409


class GoneError(PaperTrailError):
    status_code = 410


class PayloadTooLargeError(PaperTrailError):
    status_code = 413


# ==========================================================
# 🗂️ CATEGORIZATION
# ==========================================================
# Checked top to bottom; the first rule with a matching keyword wins.
CATEGORY_RULES = (
    (("w2", "w-2"), "tax", "w2"),
    (("1040",), "tax", "1040"),
    (("1099",), "tax", "1099"),
    (("paystub", "payroll"), "income", "paystub"),
    (("bank", "statement"), "banking", "bank_statement"),
    (("mortgage", "loan"), "loans", "mortgage"),
)
DEFAULT_CATEGORY = ("tax", "other")


def categorize_document(filename):
    """Map a filename to ``(category, subcategory)`` by keyword."""
    lower = (filename or "").lower()
    for keywords, category, subcategory in CATEGORY_RULES:
        if any(k in lower for k in keywords):
            return category, subcategory
    return DEFAULT_CATEGORY


def allowed(filename):
    """Checks if file extension is allowed."""
    return "." in filename and filename.rsplit(".", 1)[1].lower() in current_app.config["ALLOWED_EXT"]


def parse_timestamp(value):
    """Parse an ISO-8601 string into naive UTC; raises ValueError on garbage."""
    if not isinstance(value, str):
        raise ValueError(f"expected an ISO-8601 string, got {type(value).__name__}")
    parsed = datetime.fromisoformat(value.strip())
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


# ==========================================================
# 🔑 BEARER TOKENS
# ==========================================================
JWT_ALGORITHM = "HS256"


def generate_token(user_id):
    now = datetime.now(timezone.utc)
    payload = {
        "userId": user_id,
        "jti": new_id(),
        "iat": now,
        "exp": now + timedelta(days=current_app.config["JWT_EXPIRES_DAYS"]),
    }
    return jwt.encode(payload, current_app.config["JWT_SECRET"], algorithm=JWT_ALGORITHM)


def verify_token(token):
    """Decoded claims, or None if the signature, expiry or shape is wrong."""
    try:
        claims = jwt.decode(token, current_app.config["JWT_SECRET"], algorithms=[JWT_ALGORITHM])
    except jwt.InvalidTokenError:
        return None
    if not claims.get("userId") or not claims.get("jti"):
        return None
    return claims


def bearer_token():
    header = request.headers.get("Authorization", "")
    parts = header.split(" ")
    return parts[1] if len(parts) > 1 and parts[1] else None


# ==========================================================
# 🔐 ENCRYPTION / DECRYPTION
# ==========================================================
def encryption_key():
    key_b64 = current_app.config.get("ENCRYPTION_KEY_B64")
    return base64.b64decode(key_b64) if key_b64 else None


def encrypt_bytes(key: bytes, data: bytes):
    """Encrypt file bytes using AES-GCM (256-bit)."""
    aesgcm = AESGCM(key)
    nonce = os.urandom(12)  # 96-bit nonce
    ciphertext = aesgcm.encrypt(nonce, data, None)
    return base64.b64encode(nonce).decode(), ciphertext


def decrypt_bytes(key: bytes, nonce_b64: str, ciphertext: bytes) -> bytes:
    """Decrypt file bytes using AES-GCM."""
    aesgcm = AESGCM(key)
    nonce = base64.b64decode(nonce_b64)
    return aesgcm.decrypt(nonce, ciphertext, None)


# ==========================================================
# 💾 FILE OPERATIONS
# ==========================================================
def stored_name_for(original_name):
    """``<uuid>-<epoch millis><ext>``, extension lowercased."""
    ext = os.path.splitext(original_name)[1].lower()
    millis = int(datetime.now(timezone.utc).timestamp() * 1000)
    return f"{new_id()}-{millis}{ext}"


def save_file_bytes(stored_path: str, data: bytes):
    with open(stored_path, "wb") as f:
        f.write(data)


def read_file_bytes(stored_path: str) -> bytes:
    with open(stored_path, "rb") as f:
        return f.read()


def read_document_bytes(doc) -> bytes:
    if not os.path.exists(doc.storage_path):
        raise NotFoundError("File not found")
    data = read_file_bytes(doc.storage_path)
    if doc.nonce_b64:
        key = encryption_key()
        if key is None:
            raise RuntimeError(f"document {doc.id} is encrypted but ENCRYPTION_KEY is not set")
        data = decrypt_bytes(key, doc.nonce_b64, data)
    return data


# ==========================================================
# 🧾 AUDIT LOGGING
# ==========================================================
def audit(storage, document_id, action, user_id=None, accessed_by_email=None,
          accessed_by_name=None, metadata=None):
    """Append an audit entry stamped with the current request's client details."""
    return storage.audit.append(
        document_id,
        action,
        user_id=user_id,
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
        accessed_by_email=accessed_by_email,
        accessed_by_name=accessed_by_name,
        metadata=metadata,
    )


def expire_permissions(storage, document_id=None, now=None):
    """Deactivate active grants past their expiry; returns how many were closed."""
    expired = storage.permissions.list_expired(now=now, document_id=document_id)
    for perm in expired:
        storage.permissions.deactivate(perm)
        storage.audit.append(
            perm.document_id,
            "expire",
            accessed_by_email=perm.granted_to_email,
            accessed_by_name=perm.granted_to_name,
            metadata={"permissionId": perm.id, "role": perm.role},
        )
    return len(expired)


# ==========================================================
# 📧 EMAIL SENDING (UTF-8 SAFE)
# ==========================================================
def send_email(to_email, subject, body):
    """
    Sends an email over SMTP with UTF-8 support.
    Returns False without sending when SMTP_HOST is not configured.
    """
    cfg = current_app.config
    log = current_app.logger
    if not cfg.get("SMTP_HOST"):
        log.info("SMTP not configured; skipping email to %s (%s)", to_email, subject)
        return False

    try:
        # Create UTF-8 safe message
        msg = MIMEMultipart()
        msg["From"] = formataddr(("PaperTrail", cfg.get("FROM_EMAIL") or "noreply@papertrail.local"))
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain", "utf-8"))

        with smtplib.SMTP(cfg["SMTP_HOST"], cfg["SMTP_PORT"], timeout=20) as server:
            server.starttls()
            if cfg.get("SMTP_USER"):
                server.login(cfg["SMTP_USER"], cfg["SMTP_PASS"])
            server.send_message(msg)

        log.info("Email sent to %s", to_email)
        return True

    except (smtplib.SMTPException, OSError) as e:
        log.warning("Email send failed to %s: %s", to_email, e)
        return False


def share_notification(doc, perm, owner):
    subject = f"{owner.first_name} {owner.last_name} shared a document with you"
    body = (
        f"Hi {perm.granted_to_name},\n\n"
        f"{owner.first_name} {owner.last_name} shared '{doc.original_name}' with you "
        f"as {perm.role}.\n"
        f"Access expires: {perm.expires_at.isoformat() + 'Z' if perm.expires_at else 'never'}\n"
        f"Access token: {perm.access_token}\n\n"
        f"Regards,\nPaperTrail"
    )
    try:
        return send_email(perm.granted_to_email, subject, body)
    except Exception:
        # grant is already committed
        current_app.logger.exception("Share notification to %s failed", perm.granted_to_email)
        return False
