import uuid
from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone

db = SQLAlchemy()


def new_id():
    return str(uuid.uuid4())


def utcnow():
    """Naive UTC timestamp; every datetime column in the app is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def iso(value):
    return value.isoformat(timespec="milliseconds") + "Z" if value else None


class User(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    email = db.Column(db.String(200), unique=True, nullable=False)
    password_hash = db.Column(db.String(300), nullable=False)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    subscription_tier = db.Column(db.String(50), default="free", nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        # password hash never leaves the server
        return {
            "id": self.id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "createdAt": iso(self.created_at),
            "subscriptionTier": self.subscription_tier,
        }


class Document(db.Model):
    seq = db.Column(db.Integer, primary_key=True)   # insertion order, breaks createdAt ties
    id = db.Column(db.String(36), unique=True, nullable=False, default=new_id)
    owner_id = db.Column(db.String(36), nullable=False, index=True)
    filename = db.Column(db.String(300), nullable=False)        # file on disk
    original_name = db.Column(db.String(300), nullable=False)   # name as uploaded
    file_size = db.Column(db.Integer, nullable=False)
    mime_type = db.Column(db.String(120))
    storage_path = db.Column(db.String(600), nullable=False)
    category = db.Column(db.String(100), nullable=False)
    subcategory = db.Column(db.String(100), nullable=False)
    tax_year = db.Column(db.Integer)
    description = db.Column(db.String(1000), default="", nullable=False)
    nonce_b64 = db.Column(db.String(100))   # set only when stored encrypted
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.owner_id,
            "filename": self.filename,
            "originalName": self.original_name,
            "fileSize": self.file_size,
            "mimeType": self.mime_type,
            "storagePath": self.storage_path,
            "category": self.category,
            "subcategory": self.subcategory,
            "taxYear": self.tax_year,
            "description": self.description,
            "createdAt": iso(self.created_at),
        }


class Permission(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    document_id = db.Column(db.String(36), nullable=False, index=True)
    granted_by = db.Column(db.String(36), nullable=False)
    granted_to_email = db.Column(db.String(200), nullable=False)
    granted_to_name = db.Column(db.String(200), nullable=False)
    role = db.Column(db.String(50), nullable=False)
    expires_at = db.Column(db.DateTime)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    access_token = db.Column(db.String(36), unique=True, nullable=False, default=new_id)
    created_at = db.Column(db.DateTime, default=utcnow)

    def is_expired(self, now=None):
        return self.expires_at is not None and self.expires_at <= (now or utcnow())

    def to_dict(self):
        return {
            "id": self.id,
            "documentId": self.document_id,
            "grantedBy": self.granted_by,
            "grantedToEmail": self.granted_to_email,
            "grantedToName": self.granted_to_name,
            "role": self.role,
            "expiresAt": iso(self.expires_at),
            "isActive": self.is_active,
            "createdAt": iso(self.created_at),
            "accessToken": self.access_token,
        }


class AuditLogEntry(db.Model):
    seq = db.Column(db.Integer, primary_key=True)
    id = db.Column(db.String(36), unique=True, nullable=False, default=new_id)
    document_id = db.Column(db.String(36), nullable=False, index=True)
    user_id = db.Column(db.String(36))
    action = db.Column(db.String(50), nullable=False)
    ip_address = db.Column(db.String(100))
    user_agent = db.Column(db.String(500))
    accessed_by_email = db.Column(db.String(200))
    accessed_by_name = db.Column(db.String(200))
    extra = db.Column("metadata", db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "documentId": self.document_id,
            "userId": self.user_id,
            "action": self.action,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "accessedByEmail": self.accessed_by_email,
            "accessedByName": self.accessed_by_name,
            "metadata": self.extra or {},
            "createdAt": iso(self.created_at),
        }


class RevokedToken(db.Model):
    jti = db.Column(db.String(36), primary_key=True)
    expires_at = db.Column(db.DateTime)
    revoked_at = db.Column(db.DateTime, default=utcnow)
